"""
Realtime package initialization.

Provides the change feed used to broadcast row changes to every client
editing the same order, with Redis pub/sub and in-process transports.
"""

from orderflow.realtime.events import ChangeEvent, ChangeFeed, ChangeType, Subscription
from orderflow.realtime.memory_feed import InMemoryChangeFeed
from orderflow.realtime.redis_feed import (
    RedisChangeFeed,
    close_redis_change_feed,
    get_redis_change_feed,
)

__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "ChangeType",
    "InMemoryChangeFeed",
    "RedisChangeFeed",
    "Subscription",
    "close_redis_change_feed",
    "get_redis_change_feed",
]
