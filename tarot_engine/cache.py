"""
Namespaced, TTL-scoped cache.

Every component persists through ``Cache``. A backend only has to provide
``get``/``set``/``delete``; backends that can pipeline also expose
``execute_batch`` and get native batching, the rest fall back to running the
queued operations one by one. Neither path is atomic across keys.

Values are opaque strings, callers serialize.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import CacheUnavailable

log = logging.getLogger("tarot.cache")

HOUR = 60 * 60
DAY = 24 * HOUR


class Namespace(Enum):
    SESSION_STATE = ("tarot:state:", HOUR)
    CARDS = ("tarot:cards:", DAY)
    SPREADS = ("tarot:spreads:", DAY)
    EMBEDDINGS = ("tarot:embeddings:", DAY)
    RECENT_READINGS = ("tarot:recent:", 7 * DAY)
    USER_PATTERNS = ("tarot:patterns:", 30 * DAY)

    def __init__(self, prefix: str, ttl: int):
        self.prefix = prefix
        self.ttl = ttl


# (op, key, value, ttl) with op in {"set", "delete"}
BatchOp = Tuple[str, str, Optional[str], Optional[int]]


def _ttl_for(namespace: Namespace, ttl: Optional[int]) -> int:
    if ttl is None:
        return namespace.ttl
    if ttl <= 0:
        raise ValueError(f"ttl must be positive, got {ttl}")
    return ttl


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryBackend:
    """In-process backend. Expiry is checked lazily against ``clock``."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._store: Dict[str, Tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._store[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)


class RedisBackend:
    """redis.asyncio backend with retry on transient connectivity errors."""

    def __init__(self, client: Any, retry_attempts: int = 3, retry_base_delay_s: float = 0.1):
        self.client = client
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay_s = retry_base_delay_s

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisBackend":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )
        return cls(client, **kwargs)

    async def _with_retry(self, what: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(self.retry_attempts):
            try:
                return await fn()
            except (RedisConnectionError, RedisTimeoutError) as e:
                last_error = e
                if attempt + 1 < self.retry_attempts:
                    wait_time = self.retry_base_delay_s * (2 ** attempt)
                    log.warning("redis %s failed (%s), retrying in %.2fs", what, e, wait_time)
                    await asyncio.sleep(wait_time)
        raise CacheUnavailable(f"Redis unavailable during {what}: {last_error}") from last_error

    async def get(self, key: str) -> Optional[str]:
        return await self._with_retry(f"get {key}", lambda: self.client.get(key))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl is not None:
            await self._with_retry(f"set {key}", lambda: self.client.set(key, value, ex=ttl))
        else:
            await self._with_retry(f"set {key}", lambda: self.client.set(key, value))

    async def delete(self, key: str) -> None:
        await self._with_retry(f"delete {key}", lambda: self.client.delete(key))

    async def execute_batch(self, ops: List[BatchOp]) -> None:
        async def _run() -> Any:
            pipe = self.client.pipeline(transaction=False)
            for op, key, value, ttl in ops:
                if op == "set":
                    if ttl is not None:
                        pipe.set(key, value, ex=ttl)
                    else:
                        pipe.set(key, value)
                else:
                    pipe.delete(key)
            return await pipe.execute()

        await self._with_retry(f"pipeline of {len(ops)} ops", _run)

    async def close(self) -> None:
        await self.client.aclose()


class CacheBatch:
    """Queues set/delete operations and runs them together on ``execute``."""

    def __init__(self, cache: "Cache"):
        self._cache = cache
        self._ops: List[BatchOp] = []

    def set(self, namespace: Namespace, key: str, value: str, ttl: Optional[int] = None) -> "CacheBatch":
        self._ops.append(("set", self._cache.key(namespace, key), value, _ttl_for(namespace, ttl)))
        return self

    def delete(self, namespace: Namespace, key: str) -> "CacheBatch":
        self._ops.append(("delete", self._cache.key(namespace, key), None, None))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    async def execute(self) -> int:
        ops, self._ops = self._ops, []
        if ops:
            await self._cache._run_batch(ops)
        return len(ops)

    async def __aenter__(self) -> "CacheBatch":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.execute()


class Cache:
    def __init__(self, backend: CacheBackend):
        self.backend = backend
        native = getattr(backend, "execute_batch", None)
        self.native_batching = native is not None
        self._run_batch: Callable[[List[BatchOp]], Awaitable[None]] = native or self._run_sequential

    @staticmethod
    def key(namespace: Namespace, key: str) -> str:
        return f"{namespace.prefix}{key}"

    async def get(self, namespace: Namespace, key: str) -> Optional[str]:
        return await self.backend.get(self.key(namespace, key))

    async def set(self, namespace: Namespace, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.backend.set(self.key(namespace, key), value, _ttl_for(namespace, ttl))

    async def delete(self, namespace: Namespace, key: str) -> None:
        await self.backend.delete(self.key(namespace, key))

    def batch(self) -> CacheBatch:
        return CacheBatch(self)

    async def _run_sequential(self, ops: List[BatchOp]) -> None:
        for op, key, value, ttl in ops:
            if op == "set":
                await self.backend.set(key, value, ttl)
            else:
                await self.backend.delete(key)


def build_cache(redis_url: str = "", retry_attempts: int = 3, retry_base_delay_s: float = 0.1) -> Cache:
    if redis_url:
        log.info("Using redis cache at %s", redis_url.split("@")[-1])
        return Cache(RedisBackend.from_url(redis_url, retry_attempts=retry_attempts,
                                           retry_base_delay_s=retry_base_delay_s))
    log.info("REDIS_URL not set, using in-process cache")
    return Cache(MemoryBackend())
