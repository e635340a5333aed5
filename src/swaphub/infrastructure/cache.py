# File: src/swaphub/infrastructure/cache.py
"""
Read-through cache for station inventory

Station inventory is recomputed from slot and battery statuses on a cache
miss and kept for a short TTL. Every committed write that touches a station
invalidates its entry, so readers never see counts older than the latest
commit plus whatever is in flight.

The cache client is anything with Redis' ``get`` / ``set(ex=)`` / ``delete``
surface: a ``redis.Redis`` connection in production, InMemoryTTLCache
otherwise.
"""

from typing import Any, Callable, Dict, Optional, Tuple
import json
import logging
import threading
import time

import redis

from ..domain.inventory import StationInventory


class InMemoryTTLCache:
    """Process-local stand-in for a Redis connection"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        with self._lock:
            expires_at = self._clock() + ex if ex else None
            self._entries[key] = (value, expires_at)
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed


class StationInventoryCache:
    """Read-through cache keyed by station id"""

    KEY_PREFIX = "swaphub:station-inventory:"

    def __init__(self, client=None, ttl: int = 30):
        self.client = client if client is not None else InMemoryTTLCache()
        self.ttl = ttl
        self._logger = logging.getLogger(self.__class__.__name__)

    def _key(self, station_id: str) -> str:
        return f"{self.KEY_PREFIX}{station_id}"

    def get_or_load(
        self,
        station_id: str,
        loader: Callable[[], StationInventory]
    ) -> Dict[str, Any]:
        """Return the cached station inventory payload, computing it on a miss"""
        key = self._key(station_id)
        try:
            cached = self.client.get(key)
        except redis.RedisError as e:
            self._logger.warning(f"Cache read failed for {key}: {e}")
            cached = None

        if cached is not None:
            self._logger.debug(f"Cache hit for station {station_id}")
            return json.loads(cached)

        payload = loader().to_dict()
        try:
            self.client.set(key, json.dumps(payload), ex=self.ttl)
        except redis.RedisError as e:
            self._logger.warning(f"Cache write failed for {key}: {e}")
        return payload

    def invalidate(self, station_id: Optional[str]) -> None:
        if not station_id:
            return
        try:
            self.client.delete(self._key(station_id))
            self._logger.debug(f"Invalidated inventory cache for station {station_id}")
        except redis.RedisError as e:
            self._logger.error(f"Cache invalidation failed for station {station_id}: {e}")
            raise
