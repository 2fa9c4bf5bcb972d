"""
Tests for realtime reconciliation and echo flags.
"""

import uuid

import pytest

from orderflow.realtime.events import ChangeEvent, ChangeType
from orderflow.realtime.memory_feed import InMemoryChangeFeed
from orderflow.services.orders.enums import Table
from orderflow.services.orders.realtime import (
    SUBSCRIBED_STREAMS,
    EchoFlag,
    EchoFlags,
    RealtimeReconciler,
)

ORDER_ID = str(uuid.uuid4())


def event(table: Table, order_id: str = ORDER_ID) -> ChangeEvent:
    return ChangeEvent(table=table.value, change_type=ChangeType.INSERT, order_id=order_id, new={"id": "x"})


class Recorder:
    """Reload hook that remembers what it was called with."""

    def __init__(self) -> None:
        self.events: list[ChangeEvent] = []

    async def __call__(self, change: ChangeEvent) -> None:
        self.events.append(change)


@pytest.fixture
def hooks() -> dict[Table, Recorder]:
    return {stream: Recorder() for stream in SUBSCRIBED_STREAMS}


@pytest.fixture
def flags() -> EchoFlags:
    return EchoFlags()


@pytest.fixture
def mounted() -> dict[str, bool]:
    return {"value": True}


@pytest.fixture
def reconciler(feed: InMemoryChangeFeed, flags, hooks, mounted) -> RealtimeReconciler:
    return RealtimeReconciler(feed, ORDER_ID, flags, hooks, is_mounted=lambda: mounted["value"])


class TestEchoFlag:
    def test_consume_is_single_use(self) -> None:
        flag = EchoFlag(Table.ORDER_ITEMS)
        flag.arm()

        assert flag.consume()
        assert not flag.consume()

    def test_disarm(self) -> None:
        flag = EchoFlag(Table.ORDER_ITEMS)
        flag.arm()
        flag.disarm()

        assert not flag.armed

    def test_arming_an_unsubscribed_stream_is_ignored(self, flags: EchoFlags) -> None:
        flags.arm(Table.ORDERS)
        flags.arm(Table.ORDER_ITEMS)

        assert flags.armed_streams() == [Table.ORDER_ITEMS]

    def test_consume_clears_only_the_given_stream(self, flags: EchoFlags) -> None:
        flags.arm(Table.ORDER_ITEMS)
        flags.arm(Table.ORDER_HISTORY)

        assert flags.consume(Table.ORDER_ITEMS)
        assert not flags.consume(Table.ORDER_ITEMS)
        assert flags.armed_streams() == [Table.ORDER_HISTORY]

    def test_consume_on_an_unsubscribed_stream_is_false(self, flags: EchoFlags) -> None:
        assert not flags.consume(Table.ORDERS)


class TestSubscription:
    @pytest.mark.asyncio
    async def test_start_subscribes_each_stream_once(self, reconciler, feed) -> None:
        await reconciler.start()
        await reconciler.start()

        assert reconciler.is_subscribed
        for stream in SUBSCRIBED_STREAMS:
            assert feed.subscriber_count(stream.value, ORDER_ID) == 1

    @pytest.mark.asyncio
    async def test_streams_without_hook_are_not_subscribed(self, feed, flags) -> None:
        recorder = Recorder()
        reconciler = RealtimeReconciler(
            feed, ORDER_ID, flags, {Table.ORDER_ITEMS: recorder}, is_mounted=lambda: True
        )

        await reconciler.start()

        assert feed.subscriber_count(Table.ORDER_ITEMS.value, ORDER_ID) == 1
        assert feed.subscriber_count(Table.ORDER_HISTORY.value, ORDER_ID) == 0

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, reconciler, feed, hooks) -> None:
        await reconciler.start()
        await reconciler.stop()

        await feed.publish(event(Table.ORDER_ITEMS))

        assert not reconciler.is_subscribed
        assert feed.subscriber_count(Table.ORDER_ITEMS.value, ORDER_ID) == 0
        assert hooks[Table.ORDER_ITEMS].events == []


class TestEventHandling:
    @pytest.mark.asyncio
    async def test_handle_event_consumes_the_echo_then_reloads(self, reconciler, flags, hooks) -> None:
        flags.arm(Table.ORDER_ITEMS)

        await reconciler.handle_event(event(Table.ORDER_ITEMS))
        assert hooks[Table.ORDER_ITEMS].events == []
        assert reconciler.suppressed_count == 1

        await reconciler.handle_event(event(Table.ORDER_ITEMS))
        assert len(hooks[Table.ORDER_ITEMS].events) == 1
        assert reconciler.reload_count == 1

    @pytest.mark.asyncio
    async def test_remote_event_triggers_reload(self, reconciler, feed, hooks) -> None:
        await reconciler.start()

        await feed.publish(event(Table.ORDER_HISTORY))

        assert len(hooks[Table.ORDER_HISTORY].events) == 1
        assert hooks[Table.ORDER_ITEMS].events == []
        assert reconciler.reload_count == 1

    @pytest.mark.asyncio
    async def test_own_echo_is_suppressed_once(self, reconciler, feed, flags, hooks) -> None:
        await reconciler.start()
        flags.arm(Table.ORDER_ITEMS)

        await feed.publish(event(Table.ORDER_ITEMS))
        await feed.publish(event(Table.ORDER_ITEMS))

        assert reconciler.suppressed_count == 1
        assert len(hooks[Table.ORDER_ITEMS].events) == 1

    @pytest.mark.asyncio
    async def test_flags_are_per_stream(self, reconciler, feed, flags, hooks) -> None:
        await reconciler.start()
        flags.arm(Table.ORDER_ITEM_HISTORY)

        await feed.publish(event(Table.ORDER_ITEMS))

        assert len(hooks[Table.ORDER_ITEMS].events) == 1
        assert flags.armed_streams() == [Table.ORDER_ITEM_HISTORY]

    @pytest.mark.asyncio
    async def test_other_orders_are_ignored(self, reconciler, hooks) -> None:
        await reconciler.handle_event(event(Table.ORDER_ITEMS, order_id=str(uuid.uuid4())))

        assert hooks[Table.ORDER_ITEMS].events == []

    @pytest.mark.asyncio
    async def test_unsubscribed_tables_are_ignored(self, reconciler) -> None:
        await reconciler.handle_event(event(Table.ORDERS))
        await reconciler.handle_event(
            ChangeEvent(table="audit_log", change_type=ChangeType.INSERT, order_id=ORDER_ID)
        )

        assert reconciler.reload_count == 0

    @pytest.mark.asyncio
    async def test_events_after_unmount_are_dropped(self, reconciler, hooks, mounted) -> None:
        mounted["value"] = False

        await reconciler.handle_event(event(Table.ORDER_HISTORY))

        assert hooks[Table.ORDER_HISTORY].events == []
        assert reconciler.reload_count == 0

    @pytest.mark.asyncio
    async def test_hook_failure_does_not_count_as_reload(self, feed, flags) -> None:
        async def broken(change: ChangeEvent) -> None:
            raise RuntimeError("reload failed")

        reconciler = RealtimeReconciler(feed, ORDER_ID, flags, {Table.ORDER_ITEMS: broken}, is_mounted=lambda: True)
        await reconciler.start()

        await feed.publish(event(Table.ORDER_ITEMS))

        assert reconciler.reload_count == 0
        assert not reconciler.is_reloading
