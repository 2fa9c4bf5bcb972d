"""User-facing notification surface."""

from orderflow.services.notifications.service import (
    NotificationLevel,
    NotificationService,
    UserNotification,
)

__all__ = ["NotificationLevel", "NotificationService", "UserNotification"]
