"""
Key-value storage for idempotency records and rate-limit buckets.

Both concerns only need per-key TTL, atomic set-if-absent and atomic
increment, so they are written against KeyValueStore. MemoryKeyValueStore
serves a single process; RedisKeyValueStore lets several instances share the
same tables.

Redis keys:
- idempotent:{message_sid} - processing claim / processed marker
- rate_limit:{e164} - fixed window request counter
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Minimal TTL key-value contract shared by the memory and redis backends."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the live value for key, or None."""

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store value under key, replacing any existing value."""

    @abstractmethod
    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Store value only if key is absent. Returns True when stored."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key if present."""

    @abstractmethod
    def incr(self, key: str, ttl_seconds: int) -> Tuple[int, float]:
        """
        Atomically increment a counter.

        The TTL is applied when the counter is created and is not extended by
        later increments.

        Returns:
            Tuple of (count after increment, expiry as epoch seconds)
        """


class MemoryKeyValueStore(KeyValueStore):
    """
    Process-local store.

    Every operation runs under one lock, so read-modify-write sequences from
    concurrent requests (threads or event loop tasks) never interleave.
    """

    SWEEP_EVERY = 1000

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, float]] = {}
        self._ops = 0

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            del self._data[key]
            return None
        return entry

    def _tick(self, now: float) -> None:
        self._ops += 1
        if self._ops % self.SWEEP_EVERY:
            return
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired keys")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            now = self._clock()
            self._tick(now)
            entry = self._live(key, now)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._tick(now)
            self._data[key] = (value, now + ttl_seconds)

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            self._tick(now)
            if self._live(key, now) is not None:
                return False
            self._data[key] = (value, now + ttl_seconds)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def incr(self, key: str, ttl_seconds: int) -> Tuple[int, float]:
        with self._lock:
            now = self._clock()
            self._tick(now)
            entry = self._live(key, now)
            if entry is None:
                count, expires_at = 1, now + ttl_seconds
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
            self._data[key] = (str(count), expires_at)
            return count, expires_at

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisKeyValueStore(KeyValueStore):
    """
    Store backed by a redis-py client created with decode_responses=True.

    Atomicity comes from SET NX and INCR; nothing here needs a Lua script.
    """

    def __init__(self, redis_client, clock: Callable[[], float] = time.time):
        self._redis = redis_client
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        return self._redis.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._redis.set(key, value, ex=ttl_seconds)

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self._redis.set(key, value, ex=ttl_seconds, nx=True))

    def delete(self, key: str) -> None:
        self._redis.delete(key)

    def incr(self, key: str, ttl_seconds: int) -> Tuple[int, float]:
        pipe = self._redis.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        count, ttl = pipe.execute()
        count = int(count)
        ttl = int(ttl)
        if ttl < 0:
            # Fresh counter (or one that lost its TTL): start the window now
            self._redis.expire(key, ttl_seconds)
            ttl = ttl_seconds
        return count, self._clock() + ttl


def create_kv_store(redis_url: Optional[str]) -> KeyValueStore:
    """
    Build the configured store.

    Falls back to the in-memory store when REDIS_URL is unset or redis is
    unreachable at startup.
    """
    if not redis_url:
        logger.info("Using in-memory key-value store")
        return MemoryKeyValueStore()

    import redis

    try:
        client = redis.Redis.from_url(redis_url, decode_responses=True, socket_timeout=5)
        client.ping()
    except redis.RedisError as e:
        logger.error(f"Redis unavailable, falling back to in-memory store: {e}")
        return MemoryKeyValueStore()

    logger.info("Using redis key-value store", extra={"redis_url": redis_url[:30] + "..."})
    return RedisKeyValueStore(client)
