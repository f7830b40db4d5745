"""
Ephemeral driver presence.

Tracks which websocket connections a driver currently holds, as a Redis
set per driver with a TTL refreshed by heartbeats. Presence is separate
from the durable DriverProfile: a driver missing here is merely not
connected. Taking drivers off duty is the heartbeat supervisor's job
(drivers.tasks), never a side effect of a presence lookup.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis
from asgiref.sync import sync_to_async
from django.conf import settings

logger = logging.getLogger(__name__)

PRESENCE_KEY_PREFIX = "presence:driver:"


def get_redis_client() -> redis.Redis:
    """Get Redis client for presence keys."""
    return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


class PresenceStore:
    """Per-driver set of live channel names, expiring without heartbeats."""

    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self._redis = redis_client or get_redis_client()
        self._ttl = ttl_seconds or settings.DISPATCH_CONFIG["PRESENCE_TTL_SECONDS"]

    def _key(self, driver_id: int) -> str:
        return f"{PRESENCE_KEY_PREFIX}{driver_id}"

    def register(self, driver_id: int, channel_name: str) -> None:
        key = self._key(driver_id)
        pipe = self._redis.pipeline()
        pipe.sadd(key, channel_name)
        pipe.expire(key, self._ttl)
        pipe.execute()

    def refresh(self, driver_id: int) -> bool:
        """Extend the TTL. False when the handle already expired."""
        return bool(self._redis.expire(self._key(driver_id), self._ttl))

    def unregister(self, driver_id: int, channel_name: str) -> int:
        """Drop one connection; returns how many the driver still holds."""
        key = self._key(driver_id)
        pipe = self._redis.pipeline()
        pipe.srem(key, channel_name)
        pipe.scard(key)
        _, remaining = pipe.execute()
        return remaining

    def is_present(self, driver_id: int) -> bool:
        return bool(self._redis.exists(self._key(driver_id)))


class AsyncPresenceStore:
    """Async wrapper for PresenceStore."""

    def __init__(self, store: Optional[PresenceStore] = None):
        self._sync_store = store or get_presence_store()

    async def register(self, *args, **kwargs):
        return await sync_to_async(self._sync_store.register)(*args, **kwargs)

    async def refresh(self, *args, **kwargs):
        return await sync_to_async(self._sync_store.refresh)(*args, **kwargs)

    async def unregister(self, *args, **kwargs):
        return await sync_to_async(self._sync_store.unregister)(*args, **kwargs)


# ---------------------- Singleton Instances ----------------------

_presence_store: Optional[PresenceStore] = None
_async_presence_store: Optional[AsyncPresenceStore] = None


def get_presence_store() -> PresenceStore:
    """Get singleton PresenceStore instance."""
    global _presence_store
    if _presence_store is None:
        _presence_store = PresenceStore()
    return _presence_store


def get_async_presence_store() -> AsyncPresenceStore:
    """Get singleton AsyncPresenceStore instance."""
    global _async_presence_store
    if _async_presence_store is None:
        _async_presence_store = AsyncPresenceStore()
    return _async_presence_store
