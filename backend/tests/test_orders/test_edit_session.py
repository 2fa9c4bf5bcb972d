"""
Test suite for edit sessions.

Two sessions are opened on the same order through one service, sharing the
in-memory store and change feed, to exercise echo suppression, remote
reloads and conflicting edits the way two browser tabs would.
"""

import asyncio

import pytest

from conftest import levels
from orderflow.services.notifications import NotificationLevel
from orderflow.services.orders.enums import ItemField, ItemStatus, OrderField, OrderStatus, Table
from orderflow.services.orders.errors import (
    FieldTooLongError,
    ItemsLockedError,
    OrderItemNotFoundError,
    PersistenceError,
)
from orderflow.services.orders.service import OrderEditSession, SessionOptions
from orderflow.services.orders.unsaved_changes import CloseDecision


async def settle() -> None:
    await asyncio.sleep(0.15)


@pytest.fixture
def open_pair(service, make_order):
    """Open sessions ``a`` and ``b`` on a fresh order."""

    async def _open(**order_fields) -> tuple[OrderEditSession, OrderEditSession]:
        order = make_order(**order_fields)
        a = await service.open_session(order.id, SessionOptions(actor_id="alice"))
        b = await service.open_session(order.id, SessionOptions(actor_id="bob"))
        return a, b

    return _open


# ============================================================================
# Lifecycle Tests
# ============================================================================


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_open_subscribes_to_order_streams(self, service, make_order, feed) -> None:
        order = make_order()

        session = await service.open_session(order.id, SessionOptions(actor_id="alice", active_tab="items"))

        assert session.reconciler is not None
        assert session.reconciler.is_subscribed
        assert feed.subscriber_count(Table.ORDER_ITEMS.value, str(order.id)) == 1
        assert session.options.active_tab == "items"
        assert session.request_close() is CloseDecision.CLOSE

    @pytest.mark.asyncio
    async def test_session_without_subscription(self, service, make_order) -> None:
        order = make_order()

        session = await service.open_session(order.id, SessionOptions(subscribe=False))

        assert session.reconciler is None
        assert not session.is_reloading

    @pytest.mark.asyncio
    async def test_dirty_session_needs_confirmation_to_close(self, service, make_order, feed) -> None:
        order = make_order()
        session = await service.open_session(order.id)
        session.edit_field(OrderField.NOTES, "draft")

        assert await session.close() is CloseDecision.CONFIRMATION_REQUIRED
        assert session.is_open

        assert await session.close(force=True) is CloseDecision.CLOSE
        assert not session.is_open
        assert feed.subscriber_count(Table.ORDER_ITEMS.value, str(order.id)) == 0

    @pytest.mark.asyncio
    async def test_forced_close_drops_pending_autosave(self, service, make_order, store) -> None:
        order = make_order()
        session = await service.open_session(order.id)
        session.edit_field(OrderField.NOTES, "discarded")

        await session.close(force=True)
        await settle()

        assert store.rows(Table.ORDERS)[0]["notes"] is None


# ============================================================================
# Field Edit Tests
# ============================================================================


class TestFieldEdits:
    @pytest.mark.asyncio
    async def test_field_edit_is_autosaved(self, service, make_order, store) -> None:
        order = make_order()
        session = await service.open_session(order.id)

        session.edit_field("customer_name", "Initech")
        assert session.order.customer_name == "Initech"
        await settle()

        assert store.rows(Table.ORDERS)[0]["customer_name"] == "Initech"
        assert store.rows(Table.ORDER_CHANGES)[0]["old_value"] == "ACME Industrial"

    @pytest.mark.asyncio
    async def test_too_long_edit_reverts_the_local_value(self, service, make_order, settings) -> None:
        order = make_order(notes="short")
        session = await service.open_session(order.id)

        with pytest.raises(FieldTooLongError):
            session.edit_field(OrderField.NOTES, "x" * (settings.autosave_max_text_length + 1))

        assert session.order.notes == "short"
        assert not session.tracker.is_dirty()

    @pytest.mark.asyncio
    async def test_edit_on_removed_item_is_rejected(self, service, make_order) -> None:
        order = make_order(items=[{"is_removed": True}])
        session = await service.open_session(order.id)

        with pytest.raises(OrderItemNotFoundError):
            session.edit_item_field(order.items[0].id, ItemField.UNIT, "KG")


# ============================================================================
# Realtime Tests
# ============================================================================


class TestRealtime:
    @pytest.mark.asyncio
    async def test_status_change_reaches_the_other_session(self, open_pair) -> None:
        a, b = await open_pair()

        await a.change_status(OrderStatus.ALMOX_SSM_RECEIVED, note="checked in")

        assert a.reconciler.suppressed_count == 1
        assert a.reconciler.reload_count == 0
        assert b.order.status is OrderStatus.ALMOX_SSM_RECEIVED
        assert b.status_history[0]["notes"] == "checked in"
        assert a.echo_flags.armed_streams() == []

    @pytest.mark.asyncio
    async def test_deadline_reaches_the_other_session(self, open_pair) -> None:
        a, b = await open_pair()

        result = await a.move_to_phase("order_generation")

        assert b.order.delivery_date == result.delivery_date
        assert b.order.status is OrderStatus.ORDER_GENERATION_PENDING

    @pytest.mark.asyncio
    async def test_item_status_change_reaches_the_other_session(self, open_pair) -> None:
        a, b = await open_pair()
        item_id = a.order.items[0].id

        await a.change_item_status(item_id, ItemStatus.IN_STOCK)

        assert b.order.find_item(item_id).item_status is ItemStatus.IN_STOCK
        assert not a.tracker.is_dirty()
        assert not b.tracker.is_dirty()
        assert a.reconciler.suppressed_count == 2

    @pytest.mark.asyncio
    async def test_remote_edit_replaces_conflicting_local_edit(
        self, open_pair, store, notifications
    ) -> None:
        a, b = await open_pair()
        item_id = a.order.items[0].id

        b.edit_item_field(item_id, ItemField.ITEM_DESCRIPTION, "Bob's text")
        a.edit_item_field(item_id, ItemField.ITEM_DESCRIPTION, "Alice's text")
        await a.autosave.flush()

        assert b.order.find_item(item_id).item_description == "Alice's text"
        assert not b.autosave.has_pending
        assert notifications.history[-1].level is NotificationLevel.WARNING
        assert notifications.history[-1].title == "Item changed by another user"

        await settle()
        assert store.rows(Table.ORDER_ITEMS)[0]["item_description"] == "Alice's text"

    @pytest.mark.asyncio
    async def test_remote_edit_keeps_unrelated_local_edit(self, open_pair, store, notifications) -> None:
        a, b = await open_pair()
        item_id = a.order.items[0].id

        b.edit_item_field(item_id, ItemField.UNIT, "KG")
        a.edit_item_field(item_id, ItemField.ITEM_DESCRIPTION, "Alice's text")
        await a.autosave.flush()

        b_item = b.order.find_item(item_id)
        assert b_item.item_description == "Alice's text"
        assert b_item.unit == "KG"
        assert NotificationLevel.WARNING not in levels(notifications)

        await settle()
        row = store.rows(Table.ORDER_ITEMS)[0]
        assert row["unit"] == "KG"
        assert row["item_description"] == "Alice's text"
        assert a.order.find_item(item_id).unit == "KG"

    @pytest.mark.asyncio
    async def test_item_history_reloads_on_remote_edit(self, open_pair) -> None:
        a, b = await open_pair()
        item_id = a.order.items[0].id

        a.edit_item_field(item_id, ItemField.REQUESTED_QUANTITY, 25)
        await a.autosave.flush()

        assert b.item_history[0]["field_changed"] == "requested_quantity"
        assert b.item_history[0]["new_value"] == "25.0"
        assert a.item_history == []

    @pytest.mark.asyncio
    async def test_no_reload_after_close(self, open_pair) -> None:
        a, b = await open_pair()
        await b.close()

        await a.change_status(OrderStatus.ALMOX_SSM_RECEIVED)

        assert b.order.status is OrderStatus.ALMOX_SSM_PENDING
        assert b.reconciler.reload_count == 0


# ============================================================================
# Item Add/Remove Tests
# ============================================================================


class TestItemMembership:
    @pytest.mark.asyncio
    async def test_added_item_appears_in_both_sessions_without_dirtying(self, open_pair, store) -> None:
        a, b = await open_pair()

        item = await a.add_item(item_code="MAT-777", requested_quantity=3)

        assert b.order.find_item(item.id) is not None
        assert not a.tracker.is_dirty()
        assert not b.tracker.is_dirty()
        assert len(store.rows(Table.ORDER_ITEMS)) == 2
        assert store.rows(Table.ORDER_ITEM_HISTORY)[0]["notes"] == "Item added"

    @pytest.mark.asyncio
    async def test_removed_item_leaves_both_sessions(self, open_pair) -> None:
        a, b = await open_pair()
        item_id = a.order.items[0].id

        await a.remove_item(item_id)

        assert a.order.active_items == []
        assert b.order.active_items == []
        assert not b.tracker.is_dirty()

    @pytest.mark.asyncio
    async def test_items_are_locked_after_early_phases(self, open_pair) -> None:
        a, _ = await open_pair(status=OrderStatus.IN_PACKAGING)

        with pytest.raises(ItemsLockedError):
            await a.add_item(item_code="LATE")
        with pytest.raises(ItemsLockedError):
            await a.remove_item(a.order.items[0].id)

    @pytest.mark.asyncio
    async def test_failed_add_disarms_the_echo(self, service, make_order, store) -> None:
        order = make_order()
        session = await service.open_session(order.id)
        store.fail_on("insert", Table.ORDER_ITEMS)

        with pytest.raises(PersistenceError):
            await session.add_item(item_code="BROKEN")

        assert session.echo_flags.armed_streams() == []
        assert len(session.order.items) == 1
