"""
Redis pub/sub change feed.

Each (table, order) pair maps to one channel named
``{prefix}:{table}:{order_id}``. Events are published as JSON and decoded
back into ``ChangeEvent`` by a single listener task per feed, which fans
them out to the local handlers of that channel.
"""

import asyncio
from collections import defaultdict
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger
from orderflow.realtime.events import ChangeEvent, ChangeHandler

logger = get_logger(__name__)

# Pool options for clients the feed builds itself
CLIENT_OPTIONS: dict[str, Any] = {
    "socket_timeout": 5.0,
    "socket_connect_timeout": 5.0,
    "health_check_interval": 30,
    "decode_responses": True,
}


def _sanitize_url(url: str) -> str:
    """Mask credentials in a Redis URL before logging it."""
    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url
    host = parts.netloc.rpartition("@")[2]
    return urlunsplit(parts._replace(netloc=f"***@{host}"))


class RedisSubscription:
    """Subscription handle for ``RedisChangeFeed``."""

    def __init__(self, feed: "RedisChangeFeed", table: str, order_id: str, handler: ChangeHandler):
        self.feed = feed
        self.table = table
        self.order_id = order_id
        self.handler = handler
        self.active = True

    @property
    def channel(self) -> str:
        return self.feed.channel_for(self.table, self.order_id)

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        await self.feed._remove(self)


class RedisChangeFeed:
    """
    Change feed over Redis pub/sub.

    A client passed in is used as is and left open on ``disconnect``;
    otherwise the feed builds a pooled client from ``url`` and owns it.
    ``listen=False`` skips the background listener, leaving message
    dispatch to the caller.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        channel_prefix: Optional[str] = None,
        max_connections: Optional[int] = None,
        poll_timeout: float = 1.0,
        listen: bool = True,
    ):
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self.channel_prefix = channel_prefix or settings.realtime_channel_prefix
        self._poll_timeout = poll_timeout
        self._listen_enabled = listen

        self._client: Optional[Redis] = client
        self._owns_client = client is None
        self._pubsub: Optional[PubSub] = None
        self._listener: Optional[asyncio.Task] = None
        self._subscriptions: dict[str, list[RedisSubscription]] = defaultdict(list)
        self._is_connected = False

        self.published_count = 0
        self.delivered_count = 0

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def channel_for(self, table: str, order_id: str) -> str:
        return f"{self.channel_prefix}:{table}:{order_id}"

    def _build_client(self) -> Redis:
        return Redis.from_url(
            self._url,
            max_connections=self._max_connections,
            retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
            **CLIENT_OPTIONS,
        )

    async def connect(self) -> None:
        """
        Ping Redis and open the pub/sub handle.

        Raises:
            ConnectionError: If Redis cannot be reached
        """
        if self._is_connected:
            return

        if self._client is None:
            self._client = self._build_client()
        try:
            await self._client.ping()
        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Redis change feed unreachable",
                url=_sanitize_url(self._url),
                error=str(e),
            )
            await self.disconnect()
            raise ConnectionError(f"Redis connection failed: {e}") from e

        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        self._is_connected = True
        logger.info(
            "Redis change feed connected",
            url=_sanitize_url(self._url),
            channel_prefix=self.channel_prefix,
        )

    async def disconnect(self) -> None:
        """Stop the listener, close the pub/sub handle and any owned client."""
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None

        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

        if self._is_connected:
            logger.info("Redis change feed disconnected", channel_prefix=self.channel_prefix)
        self._is_connected = False
        self._subscriptions.clear()

    async def health_check(self) -> bool:
        """Return True when Redis answers a ping."""
        if not self._is_connected or self._client is None:
            return False
        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.error("Redis change feed health check failed", error=str(e), error_type=type(e).__name__)
            return False

    async def publish(self, event: ChangeEvent) -> None:
        """
        Publish an event on its table/order channel.

        Raises:
            ConnectionError: If the feed is not connected
            RedisError: If the publish fails
        """
        self._ensure_connected()
        channel = f"{self.channel_prefix}:{event.channel_suffix()}"
        try:
            receivers = await self._client.publish(channel, event.model_dump_json())
            self.published_count += 1
            logger.debug("Change event published", channel=channel, receivers=receivers)
        except RedisError as e:
            logger.error("Change event publish failed", channel=channel, error=str(e))
            raise

    async def subscribe(self, table: str, order_id: str, handler: ChangeHandler) -> RedisSubscription:
        """Register a handler for one table/order channel."""
        self._ensure_connected()
        subscription = RedisSubscription(self, table, str(order_id), handler)
        channel = subscription.channel

        if not self._subscriptions[channel]:
            await self._pubsub.subscribe(channel)
            logger.debug("Subscribed to channel", channel=channel)
        self._subscriptions[channel].append(subscription)

        if self._listen_enabled and (self._listener is None or self._listener.done()):
            self._listener = asyncio.create_task(self._listen())
        return subscription

    async def _remove(self, subscription: RedisSubscription) -> None:
        channel = subscription.channel
        subscribers = self._subscriptions.get(channel, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if subscribers:
            return

        self._subscriptions.pop(channel, None)
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(channel)
            except RedisError as e:
                logger.warning("Channel unsubscribe failed", channel=channel, error=str(e))

    async def _listen(self) -> None:
        while self._is_connected:
            if not self._subscriptions:
                await asyncio.sleep(self._poll_timeout)
                continue
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self._poll_timeout,
                )
            except RedisError as e:
                logger.error("Change feed listener error", error=str(e), error_type=type(e).__name__)
                await asyncio.sleep(self._poll_timeout)
                continue
            if message is not None:
                await self._dispatch(message)

    async def _dispatch(self, message: dict[str, Any]) -> None:
        if message.get("type") != "message":
            return

        channel = message.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode()
        try:
            event = ChangeEvent.model_validate_json(message["data"])
        except (ValidationError, KeyError, TypeError) as e:
            logger.warning("Malformed change event dropped", channel=channel, error=str(e))
            return

        for subscription in list(self._subscriptions.get(channel, [])):
            if not subscription.active:
                continue
            try:
                await subscription.handler(event)
                self.delivered_count += 1
            except Exception as e:
                logger.error(
                    "Change feed handler failed",
                    channel=channel,
                    event_id=event.event_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def _ensure_connected(self) -> None:
        if not self._is_connected or self._client is None:
            raise ConnectionError("Redis change feed is not connected")


_change_feed: Optional[RedisChangeFeed] = None


async def get_redis_change_feed() -> RedisChangeFeed:
    """Get or create the connected process-wide Redis change feed."""
    global _change_feed

    if _change_feed is None:
        feed = RedisChangeFeed()
        await feed.connect()
        _change_feed = feed

    return _change_feed


async def close_redis_change_feed() -> None:
    global _change_feed

    if _change_feed is not None:
        await _change_feed.disconnect()
        _change_feed = None
