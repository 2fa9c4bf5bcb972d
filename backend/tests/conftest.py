"""
Pytest configuration and shared test fixtures.

Tests run against the in-memory row store and change feed with a fixed
clock, so transitions, autosave and realtime reconciliation are exercised
end to end without PostgreSQL or Redis.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_STORE_BACKEND", "memory")
os.environ.setdefault("APP_REALTIME_BACKEND", "memory")

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

from orderflow.core.config import Settings, get_settings
from orderflow.realtime.memory_feed import InMemoryChangeFeed
from orderflow.services.notifications import NotificationLevel, NotificationService
from orderflow.services.orders.enums import OrderCategory, OrderStatus, Table
from orderflow.services.orders.models import Order, OrderItem
from orderflow.services.orders.service import OrderService
from orderflow.services.orders.state_machine import SingleFlightGate, TransitionEngine
from orderflow.services.orders.store import InMemoryRowStore

get_settings.cache_clear()

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Infrastructure Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Test settings with a short autosave quiet window."""
    return Settings(
        environment="test",
        store_backend="memory",
        realtime_backend="memory",
        autosave_quiet_window_seconds=0.05,
        default_sla_days=10,
    )


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Clock frozen at NOW."""
    return lambda: NOW


@pytest.fixture
def feed() -> InMemoryChangeFeed:
    return InMemoryChangeFeed()


@pytest.fixture
def store(feed: InMemoryChangeFeed) -> InMemoryRowStore:
    """In-memory row store publishing to the test feed."""
    return InMemoryRowStore(feed=feed)


@pytest.fixture
def notifications() -> NotificationService:
    return NotificationService(history_size=50)


@pytest.fixture
def gate() -> SingleFlightGate:
    return SingleFlightGate()


@pytest.fixture
def engine(
    store: InMemoryRowStore,
    notifications: NotificationService,
    gate: SingleFlightGate,
    settings: Settings,
    clock: Callable[[], datetime],
) -> TransitionEngine:
    return TransitionEngine(
        store,
        notifications=notifications,
        gate=gate,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def service(
    store: InMemoryRowStore,
    feed: InMemoryChangeFeed,
    notifications: NotificationService,
    gate: SingleFlightGate,
    settings: Settings,
    clock: Callable[[], datetime],
) -> OrderService:
    return OrderService(
        store,
        feed=feed,
        notifications=notifications,
        gate=gate,
        settings=settings,
        clock=clock,
    )


# ============================================================================
# Test Data Factories
# ============================================================================


def build_item(order_id, **overrides: Any) -> OrderItem:
    """Create a pending item with 10 requested and nothing delivered."""
    values: dict[str, Any] = {
        "order_id": order_id,
        "item_code": "MAT-001",
        "item_description": "Steel sheet 2mm",
        "requested_quantity": 10,
        "delivered_quantity": 0,
        "unit": "UN",
    }
    values.update(overrides)
    return OrderItem(**values)


@pytest.fixture
def make_order(store: InMemoryRowStore) -> Callable[..., Order]:
    """
    Factory that builds an order and seeds it into the store.

    Seeding publishes no change events.

    Example:
        order = make_order(status=OrderStatus.IN_PRODUCTION, items=[{"item_code": "A"}])
    """

    def _make(
        status: OrderStatus = OrderStatus.ALMOX_SSM_PENDING,
        category: OrderCategory = OrderCategory.SALES,
        items: Optional[list[dict[str, Any]]] = None,
        **fields: Any,
    ) -> Order:
        order = Order(
            order_number=fields.pop("order_number", f"ORD-TEST-{len(store.rows(Table.ORDERS)) + 1:03d}"),
            status=status,
            order_category=category,
            customer_name=fields.pop("customer_name", "ACME Industrial"),
            created_at=fields.pop("created_at", NOW - timedelta(days=10)),
            **fields,
        )
        item_values = items if items is not None else [{}]
        order.items = [build_item(order.id, **values) for values in item_values]

        store.seed(Table.ORDERS, [order.to_row()])
        store.seed(Table.ORDER_ITEMS, [item.to_row() for item in order.items])
        return order

    return _make


def levels(notifications: NotificationService) -> list[NotificationLevel]:
    """Levels of every recorded notification, oldest first."""
    return [notification.level for notification in notifications.history]
