"""Read-through cache for slot availability and aggregate counts."""

from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any

import structlog

from app.config import settings
from app.core.redis_client import CacheManager

logger = structlog.get_logger(__name__)


class SchedulingCache:
    """Cache in front of availability and stats queries.

    Only the appointment lifecycle writes invalidate it.
    """

    SLOTS_TTL = settings.cache_slots_ttl
    AGGREGATES_TTL = settings.cache_aggregates_ttl

    def __init__(self, cache_manager: CacheManager):
        """Initialize with a Redis-backed cache manager."""
        self.cache = cache_manager

    @staticmethod
    def slots_key(day: date, duration_minutes: int) -> str:
        """Generate cache key for a day's slot grid."""
        return f"slots:{day.isoformat()}:{duration_minutes}"

    @staticmethod
    def aggregate_key(name: str, *parts: Any) -> str:
        """Generate cache key for an aggregate query."""
        suffix = ":".join(str(part) for part in parts)
        return f"stats:{name}:{suffix}" if suffix else f"stats:{name}"

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl: int,
    ) -> Any:
        """
        Return the cached JSON value for ``key`` or compute and store it.

        Args:
            key: Cache key
            compute: Coroutine factory producing a JSON-serializable value
            ttl: Time to live in seconds

        Returns:
            Cached or freshly computed value
        """
        cached = self.cache.get_json(key)
        if cached is not None:
            return cached

        value = await compute()
        self.cache.set_json(key, value, ttl=ttl)
        return value

    def invalidate_slots(self, day: date) -> int:
        """Drop every cached grid for ``day``."""
        deleted = self.cache.delete_pattern(f"slots:{day.isoformat()}:*")
        logger.debug("slots_cache_invalidated", day=day.isoformat(), keys=deleted)
        return deleted

    def invalidate_aggregates(self) -> int:
        """Drop every cached aggregate."""
        deleted = self.cache.delete_pattern("stats:*")
        logger.debug("aggregates_cache_invalidated", keys=deleted)
        return deleted
