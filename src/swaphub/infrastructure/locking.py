# File: src/swaphub/infrastructure/locking.py
"""
Concurrency primitives for inventory mutations

1. StationLockRegistry - one re-entrant lock per key; every battery,
   slot, pillar and booking mutation of a station runs while holding the
   station's lock. Support tickets use "support:<request id>" keys.
2. InFlightRegistry / RedisInFlightRegistry - per-resource leases that
   reject a second operation on the same key instead of queueing it.
"""

from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterator, Optional, Set
import logging
import threading
import uuid

import redis

from ..domain.errors import OperationInProgress


# ============================================================================
# PER-STATION LOCKS
# ============================================================================

class StationLockRegistry:
    """Single writer per station"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def lock_for(self, station_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(station_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[station_id] = lock
            return lock

    @contextmanager
    def hold(self, station_id: str) -> Iterator[None]:
        lock = self.lock_for(station_id)
        with lock:
            self._logger.debug(f"Holding lock for station {station_id}")
            yield

    @contextmanager
    def hold_all(self, *station_ids: Optional[str]) -> Iterator[None]:
        """Hold several station locks, always taken in sorted order"""
        with ExitStack() as stack:
            for station_id in sorted({s for s in station_ids if s}):
                stack.enter_context(self.hold(station_id))
            yield


# ============================================================================
# IN-FLIGHT LEASES
# ============================================================================

class LeaseRegistry(ABC):
    """Reject-don't-queue guard keyed by resource id"""

    @abstractmethod
    def acquire(self, key: str) -> Optional[str]:
        """Returns a lease token, or None if the key is already held"""
        pass

    @abstractmethod
    def release(self, key: str, token: str) -> None:
        pass

    @contextmanager
    def lease(self, key: str) -> Iterator[str]:
        token = self.acquire(key)
        if token is None:
            raise OperationInProgress(
                f"An operation on {key} is already in progress",
                {"key": key}
            )
        try:
            yield token
        finally:
            self.release(key, token)


class InFlightRegistry(LeaseRegistry):
    """In-process lease registry"""

    def __init__(self):
        self._held: Set[str] = set()
        self._tokens: Dict[str, str] = {}
        self._guard = threading.Lock()

    def acquire(self, key: str) -> Optional[str]:
        with self._guard:
            if key in self._held:
                return None
            token = str(uuid.uuid4())
            self._held.add(key)
            self._tokens[key] = token
            return token

    def release(self, key: str, token: str) -> None:
        with self._guard:
            if self._tokens.get(key) == token:
                self._held.discard(key)
                del self._tokens[key]

    def is_held(self, key: str) -> bool:
        with self._guard:
            return key in self._held


class RedisInFlightRegistry(LeaseRegistry):
    """
    Lease registry shared between processes

    A lease is ``SET key token NX PX ttl``; it expires on its own if the
    holder dies. Release only deletes the key while it still holds our token.
    """

    RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

    def __init__(self, client: redis.Redis, ttl_ms: int = 5000, prefix: str = "swaphub:lease:"):
        self.client = client
        self.ttl_ms = ttl_ms
        self.prefix = prefix
        self._release = client.register_script(self.RELEASE_SCRIPT)
        self._logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_url(cls, redis_url: str, ttl_ms: int = 5000) -> 'RedisInFlightRegistry':
        return cls(redis.Redis.from_url(redis_url), ttl_ms=ttl_ms)

    def acquire(self, key: str) -> Optional[str]:
        token = str(uuid.uuid4())
        if self.client.set(self.prefix + key, token, nx=True, px=self.ttl_ms):
            return token
        self._logger.debug(f"Lease {key} already held")
        return None

    def release(self, key: str, token: str) -> None:
        try:
            self._release(keys=[self.prefix + key], args=[token])
        except redis.RedisError as e:
            # The lease still expires after ttl_ms
            self._logger.error(f"Error releasing lease {key}: {e}")
