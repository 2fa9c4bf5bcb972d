"""
User-facing notification service.

Lifecycle services report outcomes (saved, failed, conflicting remote edit)
through this service. It owns no rendering: messages are handed to the
registered sinks, and the most recent ones are retained so an API or UI
layer can show them.
"""

from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class UserNotification(BaseModel):
    """A message for the user who triggered an operation."""

    level: NotificationLevel
    title: str
    message: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


NotificationSink = Callable[[UserNotification], None]


class NotificationService:
    """
    Dispatches user notifications to sinks.

    A sink that raises is logged and skipped; the remaining sinks still
    receive the message.
    """

    def __init__(self, history_size: Optional[int] = None):
        size = history_size or get_settings().notification_history_size
        self._history: deque[UserNotification] = deque(maxlen=size)
        self._sinks: list[NotificationSink] = []

    def add_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: NotificationSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    @property
    def history(self) -> list[UserNotification]:
        return list(self._history)

    def clear(self) -> None:
        self._history.clear()

    def success(self, title: str, message: Optional[str] = None, **context: Any) -> UserNotification:
        return self.notify(NotificationLevel.SUCCESS, title, message, **context)

    def error(self, title: str, message: Optional[str] = None, **context: Any) -> UserNotification:
        return self.notify(NotificationLevel.ERROR, title, message, **context)

    def warning(self, title: str, message: Optional[str] = None, **context: Any) -> UserNotification:
        return self.notify(NotificationLevel.WARNING, title, message, **context)

    def info(self, title: str, message: Optional[str] = None, **context: Any) -> UserNotification:
        return self.notify(NotificationLevel.INFO, title, message, **context)

    def notify(
        self,
        level: NotificationLevel,
        title: str,
        message: Optional[str] = None,
        **context: Any,
    ) -> UserNotification:
        """
        Record a notification and deliver it to every sink.

        Args:
            level: Severity shown to the user
            title: Short headline
            message: Optional detail text
            **context: Structured context (order id, field, ...)

        Returns:
            The delivered notification
        """
        notification = UserNotification(level=level, title=title, message=message, context=context)
        self._history.append(notification)

        log = logger.warning if level in (NotificationLevel.ERROR, NotificationLevel.WARNING) else logger.info
        log("User notification", notification_level=level.value, title=title, notification_message=message, **context)

        for sink in list(self._sinks):
            try:
                sink(notification)
            except Exception as e:
                logger.error(
                    "Notification sink failed",
                    sink=getattr(sink, "__name__", repr(sink)),
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return notification
