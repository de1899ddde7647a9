"""
Reference storage adapters.

Components:
    memory: InMemoryEventRepository for tests and embedding
    redis_connection: Shared redis.asyncio connection
    redis_repository: RedisEventRepository with versioned alert writes
    redis_queue: RedisNotificationQueue (JSON intents on a Redis list)
"""

from siem_engine.storage.memory import InMemoryEventRepository
from siem_engine.storage.redis_connection import RedisConnection, RedisConnectionException
from siem_engine.storage.redis_queue import RedisNotificationQueue
from siem_engine.storage.redis_repository import (
    RedisEventRepository,
    dump_alert,
    load_alert,
    load_event,
)

__all__ = [
    "InMemoryEventRepository",
    "RedisConnection",
    "RedisConnectionException",
    "RedisNotificationQueue",
    "RedisEventRepository",
    "dump_alert",
    "load_alert",
    "load_event",
]
