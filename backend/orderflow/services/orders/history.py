"""
Append-only history streams.

Status changes go to ``order_history``, item field changes to
``order_item_history`` and top-level order field edits to ``order_changes``.
History writes always follow a primary write that already succeeded, so a
failure here is reported as a ``PartialFailure`` and never raised or retried.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from orderflow.core.logging import get_logger
from orderflow.services.orders.enums import Table
from orderflow.services.orders.errors import PartialFailure, PersistenceError
from orderflow.services.orders.store import RowStore

logger = get_logger(__name__)


def stringify(value: Any) -> Optional[str]:
    """Render a field value the way history rows store it."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


class HistoryRecorder:
    """Writes immutable history records through the row store."""

    def __init__(self, store: RowStore):
        self.store = store

    async def record_status_change(
        self,
        order_id: UUID,
        old_status: Any,
        new_status: Any,
        user_id: Optional[str],
        notes: Optional[str] = None,
    ) -> Optional[PartialFailure]:
        """
        Append an order status transition to ``order_history``.

        Returns:
            None on success, otherwise the PartialFailure that was logged
        """
        return await self._append(
            Table.ORDER_HISTORY,
            {
                "order_id": order_id,
                "old_status": stringify(old_status),
                "new_status": stringify(new_status),
                "user_id": user_id,
                "notes": notes,
                "changed_at": datetime.now(timezone.utc),
            },
            step="status_history",
        )

    async def record_item_change(
        self,
        order_id: UUID,
        item_id: UUID,
        field: Any,
        old_value: Any,
        new_value: Any,
        user_id: Optional[str],
        notes: Optional[str] = None,
    ) -> Optional[PartialFailure]:
        """Append an item field change to ``order_item_history``."""
        return await self._append(
            Table.ORDER_ITEM_HISTORY,
            {
                "order_id": order_id,
                "order_item_id": item_id,
                "field_changed": stringify(field),
                "old_value": stringify(old_value),
                "new_value": stringify(new_value),
                "user_id": user_id,
                "notes": notes,
                "changed_at": datetime.now(timezone.utc),
            },
            step="item_history",
        )

    async def record_order_change(
        self,
        order_id: UUID,
        field: Any,
        old_value: Any,
        new_value: Any,
        changed_by: Optional[str],
        change_type: str = "update",
    ) -> Optional[PartialFailure]:
        """Append a top-level order field edit to ``order_changes``."""
        return await self._append(
            Table.ORDER_CHANGES,
            {
                "order_id": order_id,
                "field_name": stringify(field),
                "old_value": stringify(old_value),
                "new_value": stringify(new_value),
                "change_type": change_type,
                "changed_by": changed_by,
                "changed_at": datetime.now(timezone.utc),
            },
            step="order_change_log",
        )

    async def _append(self, table: Table, values: dict[str, Any], step: str) -> Optional[PartialFailure]:
        try:
            await self.store.insert(table, values)
        except PersistenceError as e:
            failure = PartialFailure(
                f"Failed to append to {table.value}",
                step=step,
                cause=e,
                order_id=str(values.get("order_id")),
            )
            logger.error(
                "History append failed",
                table=table.value,
                step=step,
                order_id=str(values.get("order_id")),
                error=str(e),
            )
            return failure

        logger.debug("History appended", table=table.value, order_id=str(values.get("order_id")))
        return None
