"""
Counter store for per-caller rate and usage records.

The store is a plain key/record map with optional per-key TTL. It offers no
transactions and no compare-and-swap, and the production backend (Redis,
possibly replicated) is treated as eventually consistent: a write may not be
visible to a read racing it on the same key. Callers build read-modify-write
on top of ``get``/``put`` and must tolerate that.

Keys are always ``<namespace>:<identity>``. Callers pass a namespace and an
identity, never a raw key, so no code path can address another caller's
records or enumerate keys.

Every operation is bounded by ``timeout_seconds``. A timeout or backend error
is retried once after a short backoff and then surfaces as
``StoreUnavailableError``. Writes replace the whole record, so a retried write
cannot double-apply an increment.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Awaitable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry

RATE_NAMESPACE = "ratelimit"
USAGE_NAMESPACE = "usage"
NAMESPACES = frozenset({RATE_NAMESPACE, USAGE_NAMESPACE})


class CounterStore(ABC):
    """Namespaced, identity-partitioned record store with bounded timeouts."""

    transient_errors: Tuple[type, ...] = (asyncio.TimeoutError, ConnectionError, OSError)

    def __init__(
        self,
        *,
        timeout_seconds: float = 0.5,
        retry_backoff_seconds: float = 0.05,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.retry_config = RetryConfig(
            max_attempts=2,
            base_delay=retry_backoff_seconds,
            max_delay=retry_backoff_seconds,
            jitter=False,
            backoff_strategy="fixed",
        )
        self.metrics = metrics
        self.logger = get_logger("metering.store")

    @staticmethod
    def make_key(namespace: str, identity: str) -> str:
        """Build the storage key for a caller's record."""
        if namespace not in NAMESPACES:
            raise ValueError(f"unknown namespace '{namespace}'")
        if not isinstance(identity, str) or not identity:
            raise ValueError("identity must be a non-empty string")
        return f"{namespace}:{identity}"

    async def get(self, namespace: str, identity: str) -> Optional[Dict[str, Any]]:
        """Return the caller's record, or None if absent, expired or undecodable."""
        key = self.make_key(namespace, identity)
        raw = await self._run(f"get:{namespace}", lambda: self._get_raw(key))
        if raw is None:
            return None

        try:
            record = json.loads(raw)
        except (TypeError, ValueError):
            self.logger.warning("Discarding undecodable record", namespace=namespace)
            return None
        if not isinstance(record, dict):
            self.logger.warning("Discarding non-object record", namespace=namespace)
            return None
        return record

    async def put(
        self,
        namespace: str,
        identity: str,
        record: Dict[str, Any],
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Replace the caller's record, optionally expiring it after ``ttl_seconds``."""
        key = self.make_key(namespace, identity)
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        payload = json.dumps(record, separators=(",", ":"), sort_keys=True)
        await self._run(f"put:{namespace}", lambda: self._put_raw(key, payload, ttl_seconds))

    async def _run(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        async def _bounded():
            return await asyncio.wait_for(func(), timeout=self.timeout_seconds)

        try:
            return await call_with_retry(
                _bounded,
                exceptions=self.transient_errors,
                config=self.retry_config,
                operation=f"store.{operation}",
            )
        except RetryError as exc:
            self.logger.error(
                "Counter store unavailable",
                operation=operation,
                attempts=exc.attempts,
                error=repr(exc.last_exception),
            )
            if self.metrics:
                self.metrics.record_store_error(operation)
            raise StoreUnavailableError(operation) from exc

    @abstractmethod
    async def _get_raw(self, key: str) -> Optional[str]:
        """Fetch the serialized record stored under ``key``."""

    @abstractmethod
    async def _put_raw(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        """Store the serialized record under ``key``."""

    async def ping(self) -> bool:
        """Return True if the backend answers within the timeout."""
        return True

    async def close(self) -> None:
        """Release backend resources."""


class RedisCounterStore(CounterStore):
    """Counter store backed by Redis string keys holding JSON records."""

    transient_errors = CounterStore.transient_errors + (RedisError,)

    def __init__(self, redis_url: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.timeout_seconds,
                socket_timeout=self.timeout_seconds,
            )
        return self._redis

    async def _get_raw(self, key: str) -> Optional[str]:
        return await self._get_redis().get(key)

    async def _put_raw(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        await self._get_redis().set(key, value, ex=ttl_seconds)

    async def ping(self) -> bool:
        try:
            return bool(await asyncio.wait_for(self._get_redis().ping(), timeout=self.timeout_seconds))
        except self.transient_errors as exc:
            self.logger.warning("Redis ping failed", error=repr(exc))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connection closed")


class InMemoryCounterStore(CounterStore):
    """Process-local counter store for local development and tests.

    Honors TTLs against an injectable monotonic clock. It is only correct
    for a single process; production deployments use Redis.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, **kwargs) -> None:
        super().__init__(**kwargs)
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    async def _get_raw(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def _put_raw(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._data[key] = (value, expires_at)

    def ttl(self, namespace: str, identity: str) -> Optional[float]:
        """Seconds until the record expires, or None if it has no TTL or is absent."""
        entry = self._data.get(self.make_key(namespace, identity))
        if entry is None or entry[1] is None:
            return None
        return entry[1] - self._clock()


def create_counter_store(
    store_url: str,
    *,
    timeout_seconds: float,
    retry_backoff_seconds: float,
    metrics: Optional[MetricsCollector] = None,
) -> CounterStore:
    """Build the counter store named by ``store_url``."""
    kwargs = dict(
        timeout_seconds=timeout_seconds,
        retry_backoff_seconds=retry_backoff_seconds,
        metrics=metrics,
    )
    if store_url.startswith("memory://"):
        return InMemoryCounterStore(**kwargs)
    return RedisCounterStore(store_url, **kwargs)
