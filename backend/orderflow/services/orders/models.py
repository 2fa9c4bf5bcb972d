"""In-memory order and item models used by edit sessions and the engine.

These mirror the persisted rows but keep the derived ``phase`` as a
read-only computed property: it is never stored and never assigned.
"""

import uuid
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from orderflow.services.orders.enums import (
    ItemStatus,
    OrderCategory,
    OrderStatus,
    Phase,
    Priority,
)
from orderflow.services.orders.phases import phase_of


class OrderItem(BaseModel):
    """Order line item with its own sub-lifecycle."""

    model_config = ConfigDict(validate_assignment=True, use_enum_values=False)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    order_id: uuid.UUID
    item_code: str
    item_description: str = ""
    requested_quantity: float = Field(default=0, ge=0)
    delivered_quantity: float = Field(default=0, ge=0)
    unit: str = "UN"
    warehouse: Optional[str] = None
    item_status: ItemStatus = ItemStatus.PENDING
    current_phase: Optional[Phase] = None
    phase_started_at: Optional[datetime] = None
    is_removed: bool = False

    @property
    def is_fully_delivered(self) -> bool:
        """Check whether the delivered quantity covers the requested one."""
        return self.delivered_quantity >= self.requested_quantity

    def pending_snapshot(self) -> dict[str, Any]:
        """Serializable summary used when completing with pending items."""
        return {
            "id": str(self.id),
            "item_code": self.item_code,
            "item_description": self.item_description,
            "requested_quantity": self.requested_quantity,
            "delivered_quantity": self.delivered_quantity,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "OrderItem":
        return cls.model_validate(
            {key: value for key, value in row.items() if key in cls.model_fields}
        )

    def to_row(self) -> dict[str, Any]:
        return self.model_dump()


class Order(BaseModel):
    """Order aggregate with its items.

    ``phase`` is derived from ``status`` on every read.
    """

    model_config = ConfigDict(validate_assignment=True, use_enum_values=False)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    order_number: str
    order_type: str = "standard"
    order_category: OrderCategory = OrderCategory.SALES
    customer_name: str = ""
    delivery_address: str = ""
    status: OrderStatus = OrderStatus.ALMOX_SSM_PENDING
    priority: Priority = Priority.MEDIUM
    created_at: Optional[datetime] = None
    delivery_date: Optional[date] = None
    notes: Optional[str] = None
    production_released_at: Optional[datetime] = None
    production_released_by: Optional[str] = None
    items: list[OrderItem] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def phase(self) -> Phase:
        """Pipeline phase derived from the current status."""
        return phase_of(self.status, self.order_category)

    @property
    def active_items(self) -> list[OrderItem]:
        """Items that have not been removed from the order."""
        return [item for item in self.items if not item.is_removed]

    def find_item(self, item_id: uuid.UUID) -> Optional[OrderItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    @classmethod
    def from_row(cls, row: dict[str, Any], items: Optional[list[dict[str, Any]]] = None) -> "Order":
        data = {key: value for key, value in row.items() if key in cls.model_fields}
        data["items"] = [OrderItem.from_row(item) for item in items or []]
        return cls.model_validate(data)

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(exclude={"items", "phase"})
