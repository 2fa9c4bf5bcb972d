"""Unsaved change detection for an open order.

The tracker copies the order when the edit session opens and later diffs the
live order against that copy: item identity (added or removed items), the
tracked item fields and the tracked top-level order fields.
"""

import copy
from enum import Enum
from typing import Any, Iterable, Optional
from uuid import UUID

from orderflow.core.logging import get_logger
from orderflow.services.orders.enums import ItemField, OrderField
from orderflow.services.orders.models import Order, OrderItem

logger = get_logger(__name__)

TRACKED_ORDER_FIELDS: tuple[OrderField, ...] = tuple(OrderField)
TRACKED_ITEM_FIELDS: tuple[ItemField, ...] = tuple(ItemField)


class CloseDecision(str, Enum):
    """Whether a session may close without asking the user."""

    CLOSE = "close"
    CONFIRMATION_REQUIRED = "confirmation_required"


class UnsavedChangesTracker:
    """Diffs the live order against its open-time snapshot."""

    def __init__(
        self,
        order_fields: Iterable[OrderField] = TRACKED_ORDER_FIELDS,
        item_fields: Iterable[ItemField] = TRACKED_ITEM_FIELDS,
    ):
        self.order_fields = tuple(order_fields)
        self.item_fields = tuple(item_fields)
        self._live: Optional[Order] = None
        self._order_snapshot: dict[str, Any] = {}
        self._item_snapshots: dict[UUID, dict[str, Any]] = {}

    @property
    def has_snapshot(self) -> bool:
        return self._live is not None

    def snapshot(self, order: Order, items: Optional[list[OrderItem]] = None) -> None:
        """
        Record the baseline to diff against.

        Args:
            order: Live order; later checks read its current state
            items: Baseline items, defaults to the order's active items
        """
        self._live = order
        self._order_snapshot = {
            field.value: copy.deepcopy(getattr(order, field.value)) for field in self.order_fields
        }
        baseline = items if items is not None else order.active_items
        self._item_snapshots = {item.id: self._item_values(item) for item in baseline}
        logger.debug(
            "Unsaved changes snapshot taken",
            order_id=str(order.id),
            items=len(self._item_snapshots),
        )

    def rebase_item(self, item: OrderItem, fields: Optional[Iterable[ItemField]] = None) -> None:
        """Adopt an item's current state as its baseline.

        Only ``fields`` are rebased when given; a removed item leaves the
        baseline entirely.
        """
        if item.is_removed:
            self._item_snapshots.pop(item.id, None)
            return
        if fields is None or item.id not in self._item_snapshots:
            self._item_snapshots[item.id] = self._item_values(item)
            return
        baseline = self._item_snapshots[item.id]
        for field in fields:
            field = ItemField(field)
            baseline[field.value] = copy.deepcopy(getattr(item, field.value))

    def is_dirty(self) -> bool:
        if self._live is None:
            return False
        return bool(self.added_items() or self.removed_items() or self.modified_fields())

    def is_order_field_modified(self, field: OrderField) -> bool:
        if self._live is None:
            return False
        field = OrderField(field)
        return getattr(self._live, field.value) != self._order_snapshot.get(field.value)

    def is_field_modified(self, item_id: UUID, field: ItemField) -> bool:
        """Check one item field against the snapshot.

        Items added since the snapshot count as modified in every field.
        """
        item = self._live_items().get(item_id)
        if item is None:
            return False
        baseline = self._item_snapshots.get(item_id)
        if baseline is None:
            return True
        field = ItemField(field)
        return getattr(item, field.value) != baseline.get(field.value)

    def modified_fields(self) -> list[tuple[Optional[UUID], str]]:
        """List ``(item_id, field)`` pairs that differ; ``item_id`` is None for order fields."""
        if self._live is None:
            return []
        modified: list[tuple[Optional[UUID], str]] = [
            (None, field.value) for field in self.order_fields if self.is_order_field_modified(field)
        ]
        for item_id in self._live_items():
            if item_id not in self._item_snapshots:
                continue
            modified.extend(
                (item_id, field.value)
                for field in self.item_fields
                if self.is_field_modified(item_id, field)
            )
        return modified

    def added_items(self) -> list[UUID]:
        return [item_id for item_id in self._live_items() if item_id not in self._item_snapshots]

    def removed_items(self) -> list[UUID]:
        live = self._live_items()
        return [item_id for item_id in self._item_snapshots if item_id not in live]

    def request_close(self) -> CloseDecision:
        """Decide whether closing needs the user's confirmation."""
        if self.is_dirty():
            logger.info(
                "Close requested with unsaved changes",
                order_id=str(self._live.id),
                modified=len(self.modified_fields()),
            )
            return CloseDecision.CONFIRMATION_REQUIRED
        return CloseDecision.CLOSE

    def _live_items(self) -> dict[UUID, OrderItem]:
        if self._live is None:
            return {}
        return {item.id: item for item in self._live.active_items}

    def _item_values(self, item: OrderItem) -> dict[str, Any]:
        return {field.value: copy.deepcopy(getattr(item, field.value)) for field in self.item_fields}
