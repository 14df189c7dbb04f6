"""TTL cache for bootstrap envelopes, idempotency records and shadow reads.

The cache is an optimization only. Every failure is logged, counted and
swallowed so callers fall back to the authoritative database. The backend
is chosen from CACHE_URL: redis:// or rediss:// selects Redis, anything
else (or nothing) selects the in-process store used by single-instance
deployments and tests.
"""

import heapq
import json
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Protocol

import redis

from fleetctl.exceptions import CacheException

if TYPE_CHECKING:
    from fleetctl.config import Settings
    from fleetctl.services.metrics_service import MetricsService

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """String key/value store with per-key expiry."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def ping(self) -> bool: ...


class RedisCacheBackend:
    """Cache backend on a Redis server."""

    def __init__(self, url: str, client: "redis.Redis | None" = None) -> None:
        self.client = client or redis.Redis.from_url(
            url, decode_responses=True, socket_timeout=2.0, socket_connect_timeout=2.0
        )

    def get(self, key: str) -> str | None:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            raise CacheException("get", str(e)) from e

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self.client.set(key, value, ex=ttl_seconds)
        except redis.RedisError as e:
            raise CacheException("set", str(e)) from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise CacheException("delete", str(e)) from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


class MemoryCacheBackend:
    """In-process cache backend.

    Expired entries are dropped when read and swept on every write, using a
    heap ordered by expiry so a write only touches entries that have lapsed.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, float]] = {}
        self._expiry_heap: list[tuple[float, str]] = []
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = time.monotonic()
        expires_at = now + ttl_seconds
        with self._lock:
            self._evict_expired(now)
            self._entries[key] = (value, expires_at)
            heapq.heappush(self._expiry_heap, (expires_at, key))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def ping(self) -> bool:
        return True

    def _evict_expired(self, now: float) -> None:
        heap = self._expiry_heap
        while heap and heap[0][0] <= now:
            expires_at, key = heapq.heappop(heap)
            entry = self._entries.get(key)
            # Rewritten keys leave stale heap items behind; only drop the live one
            if entry is not None and entry[1] == expires_at:
                del self._entries[key]


class CacheService:
    """Singleton JSON cache that never raises."""

    def __init__(
        self,
        config: "Settings",
        metrics_service: "MetricsService",
        backend: CacheBackend | None = None,
    ) -> None:
        self.config = config
        self.metrics_service = metrics_service
        self.backend = backend or self._create_backend(config.cache_url)

    @staticmethod
    def _create_backend(cache_url: str | None) -> CacheBackend:
        if cache_url and cache_url.startswith(("redis://", "rediss://", "unix://")):
            logger.info("Using Redis cache backend")
            return RedisCacheBackend(cache_url)
        logger.info("Using in-process cache backend")
        return MemoryCacheBackend()

    def get_json(self, key: str) -> Any | None:
        """Return the decoded value, or None on miss or failure."""
        try:
            raw = self.backend.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except CacheException as e:
            self._record_failure("get", key, e)
        except ValueError as e:
            # Undecodable entry; drop it so the next write replaces it
            self._record_failure("decode", key, e)
            self.delete(key)
        return None

    def set_json(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Store a value; returns False when skipped or failed."""
        if ttl_seconds <= 0:
            logger.debug("Skipping cache write for %s with non-positive TTL %d", key, ttl_seconds)
            return False
        try:
            self.backend.set(key, json.dumps(value, separators=(",", ":")), ttl_seconds)
            return True
        except CacheException as e:
            self._record_failure("set", key, e)
            return False

    def delete(self, key: str) -> None:
        try:
            self.backend.delete(key)
        except CacheException as e:
            self._record_failure("delete", key, e)

    def ping(self) -> bool:
        return self.backend.ping()

    def _record_failure(self, operation: str, key: str, error: Exception) -> None:
        logger.warning("Cache %s failed for key %s: %s", operation, key, error)
        self.metrics_service.record_cache_error(operation)
