"""
In-process change feed.

Delivers events to handlers registered in the same process. Used by the
in-memory development backend and by tests. Handler failures are logged
and do not stop delivery to the remaining subscribers.
"""

from collections import defaultdict
from typing import Optional

from orderflow.core.logging import get_logger
from orderflow.realtime.events import ChangeEvent, ChangeHandler

logger = get_logger(__name__)


class InMemorySubscription:
    """Subscription handle for ``InMemoryChangeFeed``."""

    def __init__(self, feed: "InMemoryChangeFeed", table: str, order_id: str, handler: ChangeHandler):
        self.feed = feed
        self.table = table
        self.order_id = order_id
        self.handler = handler
        self.active = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self.feed._remove(self)


class InMemoryChangeFeed:
    """Change feed that dispatches synchronously within the event loop."""

    def __init__(self) -> None:
        self._subscribers: dict[tuple[str, str], list[InMemorySubscription]] = defaultdict(list)
        self.published: list[ChangeEvent] = []
        self.paused = False
        self._held: list[ChangeEvent] = []

    async def publish(self, event: ChangeEvent) -> None:
        self.published.append(event)
        if self.paused:
            self._held.append(event)
            return
        await self._deliver(event)

    async def subscribe(self, table: str, order_id: str, handler: ChangeHandler) -> InMemorySubscription:
        subscription = InMemorySubscription(self, table, str(order_id), handler)
        self._subscribers[(table, str(order_id))].append(subscription)
        logger.debug("Change feed subscription added", table=table, order_id=str(order_id))
        return subscription

    def pause(self) -> None:
        """Hold events instead of delivering them until ``resume``."""
        self.paused = True

    async def resume(self, limit: Optional[int] = None) -> None:
        """
        Deliver held events in arrival order.

        With ``limit`` only that many are delivered and the feed stays
        paused while any remain held, so later events queue behind them.
        """
        delivered = 0
        while self._held and (limit is None or delivered < limit):
            await self._deliver(self._held.pop(0))
            delivered += 1
        self.paused = bool(self._held)

    def subscriber_count(self, table: str, order_id: str) -> int:
        return len(self._subscribers.get((table, str(order_id)), []))

    async def _deliver(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscribers.get((event.table, event.order_id), [])):
            if not subscription.active:
                continue
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(
                    "Change feed handler failed",
                    table=event.table,
                    order_id=event.order_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def _remove(self, subscription: InMemorySubscription) -> None:
        key = (subscription.table, subscription.order_id)
        subscribers = self._subscribers.get(key, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(key, None)
