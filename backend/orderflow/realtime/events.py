"""
Change feed event model and transport interface.

A change feed delivers row-level insert/update/delete events per table,
filtered by order. Transports make no ordering or exactly-once promises
beyond eventual delivery.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import BaseModel, Field


class ChangeType(str, Enum):
    """Kind of row change carried by an event."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A single row change scoped to an order."""

    table: str
    change_type: ChangeType
    order_id: str
    row_id: Optional[str] = None
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def channel_suffix(self) -> str:
        return f"{self.table}:{self.order_id}"


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class Subscription(Protocol):
    """Handle returned by ``ChangeFeed.subscribe``."""

    table: str
    order_id: str

    async def unsubscribe(self) -> None:
        ...


class ChangeFeed(Protocol):
    """Per-table change feed filterable by order."""

    async def publish(self, event: ChangeEvent) -> None:
        ...

    async def subscribe(
        self,
        table: str,
        order_id: str,
        handler: ChangeHandler,
    ) -> Subscription:
        ...
