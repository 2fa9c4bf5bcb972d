"""
Tests for unsaved change detection.
"""

import uuid

import pytest

from conftest import build_item
from orderflow.services.orders.enums import ItemField, ItemStatus, OrderField, Priority
from orderflow.services.orders.models import Order
from orderflow.services.orders.unsaved_changes import CloseDecision, UnsavedChangesTracker


@pytest.fixture
def order() -> Order:
    order = Order(order_number="ORD-1", customer_name="ACME", notes="initial")
    order.items = [build_item(order.id, item_code="A"), build_item(order.id, item_code="B")]
    return order


@pytest.fixture
def tracker(order: Order) -> UnsavedChangesTracker:
    tracker = UnsavedChangesTracker()
    tracker.snapshot(order)
    return tracker


class TestSnapshot:
    def test_fresh_snapshot_is_clean(self, tracker: UnsavedChangesTracker) -> None:
        assert tracker.has_snapshot
        assert not tracker.is_dirty()
        assert tracker.modified_fields() == []
        assert tracker.request_close() is CloseDecision.CLOSE

    def test_without_snapshot_nothing_is_dirty(self) -> None:
        tracker = UnsavedChangesTracker()

        assert not tracker.has_snapshot
        assert not tracker.is_dirty()
        assert not tracker.is_order_field_modified(OrderField.NOTES)
        assert not tracker.is_field_modified(uuid.uuid4(), ItemField.UNIT)


class TestDetection:
    def test_order_field_change(self, tracker, order) -> None:
        order.priority = Priority.HIGH

        assert tracker.is_dirty()
        assert tracker.is_order_field_modified(OrderField.PRIORITY)
        assert tracker.modified_fields() == [(None, "priority")]
        assert tracker.request_close() is CloseDecision.CONFIRMATION_REQUIRED

    def test_reverting_a_field_is_clean_again(self, tracker, order) -> None:
        order.notes = "changed"
        order.notes = "initial"

        assert not tracker.is_dirty()

    def test_item_field_change(self, tracker, order) -> None:
        item = order.items[1]
        item.requested_quantity = 42

        assert tracker.is_field_modified(item.id, ItemField.REQUESTED_QUANTITY)
        assert not tracker.is_field_modified(item.id, ItemField.UNIT)
        assert tracker.modified_fields() == [(item.id, "requested_quantity")]

    def test_added_item(self, tracker, order) -> None:
        added = build_item(order.id, item_code="C")
        order.items.append(added)

        assert tracker.added_items() == [added.id]
        assert tracker.is_field_modified(added.id, ItemField.ITEM_CODE)
        assert tracker.is_dirty()

    def test_removed_item(self, tracker, order) -> None:
        removed = order.items[0]
        removed.is_removed = True

        assert tracker.removed_items() == [removed.id]
        assert tracker.is_dirty()

    def test_snapshot_is_a_copy(self, order) -> None:
        tracker = UnsavedChangesTracker()
        tracker.snapshot(order)

        order.items[0].item_description = "edited in place"

        assert tracker.is_field_modified(order.items[0].id, ItemField.ITEM_DESCRIPTION)


class TestRebase:
    def test_rebase_selected_fields_only(self, tracker, order) -> None:
        item = order.items[0]
        item.item_status = ItemStatus.IN_STOCK
        item.unit = "KG"

        tracker.rebase_item(item, fields=[ItemField.ITEM_STATUS])

        assert not tracker.is_field_modified(item.id, ItemField.ITEM_STATUS)
        assert tracker.is_field_modified(item.id, ItemField.UNIT)

    def test_rebase_whole_item(self, tracker, order) -> None:
        item = order.items[0]
        item.unit = "KG"

        tracker.rebase_item(item)

        assert not tracker.is_dirty()

    def test_rebase_adopts_added_item(self, tracker, order) -> None:
        added = build_item(order.id, item_code="C")
        order.items.append(added)

        tracker.rebase_item(added, fields=[ItemField.UNIT])

        assert tracker.added_items() == []
        assert not tracker.is_dirty()

    def test_rebase_removed_item_leaves_baseline(self, tracker, order) -> None:
        removed = order.items[1]
        removed.is_removed = True

        tracker.rebase_item(removed)

        assert tracker.removed_items() == []
        assert not tracker.is_dirty()

    def test_custom_tracked_fields(self, order) -> None:
        tracker = UnsavedChangesTracker(order_fields=[OrderField.NOTES], item_fields=[ItemField.UNIT])
        tracker.snapshot(order)

        order.customer_name = "Untracked"
        order.items[0].item_code = "untracked"

        assert not tracker.is_dirty()
