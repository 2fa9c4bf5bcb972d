"""Database models."""

from orderflow.database.models.order import (
    Order,
    OrderChange,
    OrderComment,
    OrderCompletionNote,
    OrderItem,
    OrderItemHistory,
    OrderStatusHistory,
    OrderTypeConfig,
)

__all__ = [
    "Order",
    "OrderChange",
    "OrderComment",
    "OrderCompletionNote",
    "OrderItem",
    "OrderItemHistory",
    "OrderStatusHistory",
    "OrderTypeConfig",
]
