"""
Realtime reconciliation for an open order.

A session subscribes to three change streams scoped to its order. Events
caused by the session's own writes are recognized through per-stream echo
flags and skipped; every other event triggers the stream's reload hook.

Echo flag lifecycle per stream::

    Idle --arm()--> EchoArmed --event consumed / disarm()--> Idle

A writer arms the flag immediately before a write that will produce a feed
event and disarms it if that write fails.
"""

from enum import Enum
from typing import Awaitable, Callable, Optional

from orderflow.core.logging import get_logger
from orderflow.realtime.events import ChangeEvent, ChangeFeed, Subscription
from orderflow.services.orders.enums import Table

logger = get_logger(__name__)

ReloadHook = Callable[[ChangeEvent], Awaitable[None]]

SUBSCRIBED_STREAMS: tuple[Table, ...] = (
    Table.ORDER_HISTORY,
    Table.ORDER_ITEM_HISTORY,
    Table.ORDER_ITEMS,
)


class EchoState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"


class EchoFlag:
    """Single-use marker for the next self-caused event on one stream."""

    def __init__(self, stream: Table):
        self.stream = stream
        self.state = EchoState.IDLE

    @property
    def armed(self) -> bool:
        return self.state is EchoState.ARMED

    def arm(self) -> None:
        self.state = EchoState.ARMED

    def disarm(self) -> None:
        self.state = EchoState.IDLE

    def consume(self) -> bool:
        """Clear the flag, returning whether it was armed."""
        was_armed = self.armed
        self.state = EchoState.IDLE
        return was_armed

    def __repr__(self) -> str:
        return f"<EchoFlag({self.stream.value}, {self.state.value})>"


class EchoFlags:
    """The echo flags of one session, one per subscribed stream."""

    def __init__(self, streams: tuple[Table, ...] = SUBSCRIBED_STREAMS):
        self._flags = {stream: EchoFlag(stream) for stream in streams}

    def arm(self, stream: Table) -> None:
        # Writes to unsubscribed tables never echo back.
        flag = self._flags.get(stream)
        if flag is not None:
            flag.arm()

    def disarm(self, stream: Table) -> None:
        flag = self._flags.get(stream)
        if flag is not None:
            flag.disarm()

    def consume(self, stream: Table) -> bool:
        """Clear the flag of ``stream``, returning whether it was armed."""
        flag = self._flags.get(stream)
        return flag is not None and flag.consume()

    def armed_streams(self) -> list[Table]:
        return [stream for stream, flag in self._flags.items() if flag.armed]


class RealtimeReconciler:
    """
    Routes change feed events for one order to reload hooks.

    Attributes:
        order_id: Order whose streams are subscribed
        echo_flags: Flags shared with the session's writers
        reload_count: Number of reload hooks invoked
        suppressed_count: Number of events skipped as self-echo
    """

    def __init__(
        self,
        feed: ChangeFeed,
        order_id: str,
        echo_flags: EchoFlags,
        reload_hooks: dict[Table, ReloadHook],
        is_mounted: Callable[[], bool],
    ):
        self.feed = feed
        self.order_id = str(order_id)
        self.echo_flags = echo_flags
        self.reload_hooks = reload_hooks
        self.is_mounted = is_mounted
        self._subscriptions: list[Subscription] = []
        self._in_flight = 0
        self.reload_count = 0
        self.suppressed_count = 0

    @property
    def is_reloading(self) -> bool:
        return self._in_flight > 0

    @property
    def is_subscribed(self) -> bool:
        return bool(self._subscriptions)

    async def start(self) -> None:
        """Subscribe to every stream that has a reload hook."""
        if self._subscriptions:
            return
        for stream in SUBSCRIBED_STREAMS:
            if stream not in self.reload_hooks:
                continue
            subscription = await self.feed.subscribe(stream.value, self.order_id, self.handle_event)
            self._subscriptions.append(subscription)

        logger.info(
            "Realtime reconciler subscribed",
            order_id=self.order_id,
            streams=[s.table for s in self._subscriptions],
        )

    async def stop(self) -> None:
        """Unsubscribe from all streams."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.unsubscribe()
        if subscriptions:
            logger.info("Realtime reconciler unsubscribed", order_id=self.order_id)

    async def handle_event(self, event: ChangeEvent) -> None:
        """Consume a self-echo or dispatch the event to its reload hook."""
        try:
            stream = Table(event.table)
        except ValueError:
            stream = None
        if stream not in SUBSCRIBED_STREAMS:
            logger.warning("Event for unknown stream ignored", table=event.table)
            return

        if event.order_id != self.order_id:
            return

        if self.echo_flags.consume(stream):
            self.suppressed_count += 1
            logger.debug(
                "Self-echo suppressed",
                order_id=self.order_id,
                stream=stream.value,
                event_id=event.event_id,
            )
            return

        if not self.is_mounted():
            logger.debug("Event after close ignored", order_id=self.order_id, stream=stream.value)
            return

        hook: Optional[ReloadHook] = self.reload_hooks.get(stream)
        if hook is None:
            return

        self._in_flight += 1
        try:
            await hook(event)
            self.reload_count += 1
        finally:
            self._in_flight -= 1
