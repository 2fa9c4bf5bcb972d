"""
Order lifecycle tables.

Statuses are stored as plain strings rather than database enums so rows
written with a status this release does not know still load; mapping a status
to a phase is done in the service layer. History tables are append-only.
"""

import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import AppendOnlyModel, BaseModel, create_table_args


class Order(BaseModel):
    """
    Order row.

    The pipeline phase is not stored; it is derived from ``status``.
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        comment="Human-readable order number",
    )

    order_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="standard",
        comment="Order type, keys order_type_config",
    )

    order_category: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="sales",
        comment="sales or stock; selects the production column",
    )

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    delivery_address: Mapped[str] = mapped_column(Text, nullable=False, default="")

    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="almox_ssm_pending",
        comment="Fine-grained lifecycle status",
    )

    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")

    delivery_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        comment="Delivery deadline",
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    production_released_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="First time any item entered production",
    )

    production_released_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = create_table_args(
        Index("ix_orders_status", "status"),
        Index("ix_orders_category_status", "order_category", "status"),
        Index("ix_orders_created_at", "created_at"),
        CheckConstraint("priority IN ('high', 'medium', 'low')", name="priority"),
        CheckConstraint("order_category IN ('sales', 'stock')", name="category"),
        comment="Orders moving through the fulfillment pipeline",
    )


class OrderItem(BaseModel):
    """Order line item with its own status."""

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="Parent order identifier",
    )

    item_code: Mapped[str] = mapped_column(String(100), nullable=False)

    item_description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    requested_quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    delivered_quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    unit: Mapped[str] = mapped_column(String(10), nullable=False, default="UN")

    warehouse: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    item_status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")

    current_phase: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    phase_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the item entered current_phase",
    )

    is_removed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        comment="Soft removal flag",
    )

    __table_args__ = create_table_args(
        Index("ix_order_items_order", "order_id"),
        CheckConstraint("requested_quantity >= 0", name="requested_positive"),
        CheckConstraint("delivered_quantity >= 0", name="delivered_positive"),
        comment="Order line items",
    )


class OrderStatusHistory(AppendOnlyModel):
    """Order status transitions."""

    __tablename__ = "order_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )

    old_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    new_status: Mapped[str] = mapped_column(String(50), nullable=False)

    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = create_table_args(
        Index("ix_order_history_order_changed", "order_id", "changed_at"),
        comment="Append-only order status history",
    )


class OrderItemHistory(AppendOnlyModel):
    """Item field changes."""

    __tablename__ = "order_item_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )

    order_item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=False,
    )

    field_changed: Mapped[str] = mapped_column(String(50), nullable=False)

    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = create_table_args(
        Index("ix_order_item_history_order_changed", "order_id", "changed_at"),
        Index("ix_order_item_history_item", "order_item_id"),
        comment="Append-only item field history",
    )


class OrderChange(AppendOnlyModel):
    """Generic change log for top-level order fields."""

    __tablename__ = "order_changes"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )

    field_name: Mapped[str] = mapped_column(String(50), nullable=False)

    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    change_type: Mapped[str] = mapped_column(String(20), nullable=False, default="update")

    changed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = create_table_args(
        Index("ix_order_changes_order_changed", "order_id", "changed_at"),
        comment="Append-only order field change log",
    )


class OrderCompletionNote(AppendOnlyModel):
    """Justification recorded when an order is completed with pending items."""

    __tablename__ = "order_completion_notes"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    note: Mapped[str] = mapped_column(Text, nullable=False)

    pending_items: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
        comment="Snapshot of the items still pending at completion",
    )

    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class OrderComment(AppendOnlyModel):
    """Structured comment attached to an order."""

    __tablename__ = "order_comments"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    comment: Mapped[str] = mapped_column(Text, nullable=False)

    responsible: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class OrderTypeConfig(BaseModel):
    """Per order type settings."""

    __tablename__ = "order_type_config"

    order_type: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    display_name: Mapped[str] = mapped_column(String(100), nullable=False)

    default_sla_days: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=10,
        comment="Days added to today when an order enters a time-sensitive phase",
    )

    __table_args__ = create_table_args(
        CheckConstraint("default_sla_days >= 0", name="sla_positive"),
        comment="Order type configuration",
    )
