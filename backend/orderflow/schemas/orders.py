"""
Order lifecycle Pydantic schemas for API request/response validation.

Requests carry plain strings for statuses and phases; they are parsed into
enums by the service layer so unknown values surface as lifecycle
validation errors rather than generic 422s.
"""

from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderflow.services.orders.enums import (
    ItemStatus,
    OrderCategory,
    OrderStatus,
    Phase,
    Priority,
    TransitionOrigin,
)
from orderflow.services.orders.models import Order, OrderItem
from orderflow.services.orders.phases import status_label


class ItemCreateRequest(BaseModel):
    """Order item payload."""

    model_config = ConfigDict(str_strip_whitespace=True)

    item_code: str = Field(..., min_length=1, max_length=100, description="Item code")
    item_description: str = Field(default="", max_length=2000)
    requested_quantity: float = Field(default=0, ge=0, description="Requested quantity")
    delivered_quantity: float = Field(default=0, ge=0, description="Delivered quantity")
    unit: str = Field(default="UN", min_length=1, max_length=10)
    warehouse: Optional[str] = Field(None, max_length=100)


class OrderCreateRequest(BaseModel):
    """Order creation request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    customer_name: str = Field(..., min_length=1, max_length=255, description="Customer name")
    items: list[ItemCreateRequest] = Field(..., min_length=1, description="Order items")
    order_type: str = Field(default="standard", min_length=1, max_length=50)
    order_category: OrderCategory = Field(default=OrderCategory.SALES)
    delivery_address: str = Field(default="", max_length=2000)
    priority: Priority = Field(default=Priority.MEDIUM)
    delivery_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=2000)
    order_number: Optional[str] = Field(None, min_length=1, max_length=50)


class StatusChangeRequest(BaseModel):
    """
    Explicit status change.

    ``note`` justifies completing with pending items; ``comment`` and
    ``responsible`` are required when moving to exception.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    status: str = Field(..., min_length=1, description="Target status")
    note: Optional[str] = Field(None, max_length=2000)
    comment: Optional[str] = Field(None, max_length=2000)
    responsible: Optional[str] = Field(None, max_length=255)

    @field_validator("note", "comment", "responsible")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat whitespace-only text as absent."""
        return v or None


class PhaseDropRequest(BaseModel):
    """Move an order onto a board column."""

    phase: str = Field(..., min_length=1, description="Target phase")


class ItemStatusRequest(BaseModel):
    """Item status change."""

    item_status: ItemStatus = Field(..., description="New item status")


class ItemResponse(BaseModel):
    """Order item details."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    item_code: str
    item_description: str
    requested_quantity: float
    delivered_quantity: float
    unit: str
    warehouse: Optional[str] = None
    item_status: ItemStatus
    current_phase: Optional[Phase] = None
    phase_started_at: Optional[datetime] = None
    is_removed: bool = False

    @classmethod
    def from_item(cls, item: OrderItem) -> "ItemResponse":
        return cls.model_validate(item.model_dump())


class OrderResponse(BaseModel):
    """Order details with items and derived phase."""

    id: UUID
    order_number: str
    order_type: str
    order_category: OrderCategory
    customer_name: str
    delivery_address: str
    status: OrderStatus
    status_label: str
    phase: Phase
    priority: Priority
    created_at: Optional[datetime] = None
    delivery_date: Optional[date] = None
    notes: Optional[str] = None
    production_released_at: Optional[datetime] = None
    production_released_by: Optional[str] = None
    items: list[ItemResponse] = Field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        data = order.model_dump(exclude={"items"})
        data["status_label"] = status_label(order.status)
        data["items"] = [ItemResponse.from_item(item) for item in order.active_items]
        return cls.model_validate(data)


class TransitionResponse(BaseModel):
    """Outcome of a status change or phase drop."""

    order: OrderResponse
    changed: bool
    origin: TransitionOrigin
    old_status: OrderStatus
    new_status: OrderStatus
    delivery_date: Optional[date] = None
    warnings: list[str] = Field(default_factory=list, description="Dependent writes that failed")


class ItemStatusResponse(BaseModel):
    """Outcome of an item status change."""

    order: OrderResponse
    item: ItemResponse
    changed: bool
    old_status: ItemStatus
    new_status: ItemStatus
    cascaded_status: Optional[OrderStatus] = None
    production_released: bool = False
    warnings: list[str] = Field(default_factory=list)


class PhaseInfo(BaseModel):
    """Board column description."""

    phase: Phase
    statuses: list[OrderStatus]
    default_status: OrderStatus


class BoardCard(BaseModel):
    """Order card shown in a board column."""

    id: UUID
    order_number: str
    customer_name: str
    status: str
    status_label: str
    priority: Optional[str] = None
    delivery_date: Optional[date] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "BoardCard":
        return cls(
            id=row["id"],
            order_number=row["order_number"],
            customer_name=row.get("customer_name") or "",
            status=row.get("status") or "",
            status_label=status_label(row.get("status")),
            priority=row.get("priority"),
            delivery_date=row.get("delivery_date"),
        )


class BoardColumn(BaseModel):
    phase: Phase
    orders: list[BoardCard]


class BoardResponse(BaseModel):
    """Orders grouped by phase, in pipeline order."""

    columns: list[BoardColumn]
    total: int


class DaysInPhaseResponse(BaseModel):
    """Whole days each order has spent in its current status."""

    days: dict[str, int]
