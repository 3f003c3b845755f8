"""
Shared key-value store used for experiment assignments, aggregate counters,
user routing history and circuit cool-down timers.

Two implementations:
- RedisKeyValueStore: redis asyncio client with a connection pool and its own
  circuit breaker. Store failures are logged and degrade to a miss / no-op;
  they never fail a routed request.
- InMemoryKeyValueStore: process-local store with the same semantics
  (expiring keys, atomic increments), used when REDIS_URL is unset and in tests.

Values passed to `get`/`set` are JSON serialized (strings included, so they
round-trip unchanged); hash fields and set members are plain strings, as in
Redis.
"""
import fnmatch
import json
import time
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from tiergate.core.circuit_breaker import CircuitBreaker
from tiergate.core.errors import CircuitOpenError
from tiergate.core.logging import get_logger

logger = get_logger(__name__)


def _serialize(value: Any) -> str:
    return json.dumps(value)


def _deserialize(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return value


class KeyValueStore:
    """Interface shared by the Redis and in-memory stores."""

    async def get(self, key: str) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        raise NotImplementedError

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Atomically claim `key`. False when it already holds a live value."""
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    async def expire(self, key: str, ttl: int) -> bool:
        raise NotImplementedError

    async def incr(self, key: str, amount: int = 1) -> int:
        raise NotImplementedError

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        raise NotImplementedError

    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        raise NotImplementedError

    async def hgetall(self, key: str) -> Dict[str, str]:
        raise NotImplementedError

    async def sadd(self, key: str, *members: str) -> int:
        raise NotImplementedError

    async def srem(self, key: str, *members: str) -> int:
        raise NotImplementedError

    async def smembers(self, key: str) -> Set[str]:
        raise NotImplementedError

    async def keys(self, pattern: str) -> List[str]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store.

    Every operation runs under one lock, so increments are atomic with
    respect to other tasks and threads. Expired keys are dropped on access.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = Lock()
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._data

    def _container(self, key: str, factory: Callable[[], Any]) -> Any:
        if not self._alive(key):
            self._data[key] = factory()
        return self._data[key]

    async def get(self, key: str) -> Any:
        with self._lock:
            if not self._alive(key):
                return None
            return _deserialize(self._data[key])

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        with self._lock:
            self._data[key] = _serialize(value)
            if ttl:
                self._expires[key] = self._clock() + ttl
            else:
                self._expires.pop(key, None)
            return True

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        with self._lock:
            if self._alive(key):
                return False
            self._data[key] = _serialize(value)
            if ttl:
                self._expires[key] = self._clock() + ttl
            else:
                self._expires.pop(key, None)
            return True

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._alive(key)

    async def delete(self, *keys: str) -> int:
        deleted = 0
        with self._lock:
            for key in keys:
                if self._alive(key):
                    deleted += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
        return deleted

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            if not self._alive(key):
                return False
            self._expires[key] = self._clock() + ttl
            return True

    async def incr(self, key: str, amount: int = 1) -> int:
        with self._lock:
            current = int(self._data[key]) if self._alive(key) else 0
            current += amount
            self._data[key] = str(current)
            return current

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            mapping = self._container(key, dict)
            value = int(mapping.get(field, 0)) + amount
            mapping[field] = str(value)
            return value

    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        with self._lock:
            mapping = self._container(key, dict)
            value = float(mapping.get(field, 0.0)) + amount
            mapping[field] = repr(value)
            return value

    async def hgetall(self, key: str) -> Dict[str, str]:
        with self._lock:
            if not self._alive(key):
                return {}
            return dict(self._data[key])

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            members_set = self._container(key, set)
            before = len(members_set)
            members_set.update(members)
            return len(members_set) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            if not self._alive(key):
                return 0
            members_set = self._data[key]
            before = len(members_set)
            members_set.difference_update(members)
            return before - len(members_set)

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            if not self._alive(key):
                return set()
            return set(self._data[key])

    async def keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [key for key in list(self._data) if self._alive(key) and fnmatch.fnmatchcase(key, pattern)]


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store with circuit breaker protection.

    Pool: 20 connections, 5s connect/socket timeouts, retry on timeout.
    """

    def __init__(self, client: "redis.Redis", circuit_breaker: Optional[CircuitBreaker] = None):
        self.client = client
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            cooldown_seconds=30.0,
        )

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        client = redis.from_url(
            url,
            max_connections=20,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            decode_responses=True,
        )
        return cls(client)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.warning("redis_ping_failed", error=str(e), error_type=type(e).__name__)
            return False

    async def _run(self, operation: str, default: Any, func: Callable, *args) -> Any:
        try:
            return await self.circuit_breaker.call("redis", func, *args)
        except CircuitOpenError:
            logger.debug("kv_store_circuit_open", operation=operation)
            return default
        except RedisError as e:
            logger.warning(
                "kv_store_error",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            return default

    async def get(self, key: str) -> Any:
        return _deserialize(await self._run("get", None, self.client.get, key))

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        serialized = _serialize(value)
        if ttl:
            result = await self._run("setex", None, self.client.setex, key, ttl, serialized)
        else:
            result = await self._run("set", None, self.client.set, key, serialized)
        return bool(result)

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        async def _set_nx() -> Any:
            return await self.client.set(key, _serialize(value), ex=ttl or None, nx=True)

        return bool(await self._run("set_nx", None, _set_nx))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", 0, self.client.exists, key))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", 0, self.client.delete, *keys))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._run("expire", False, self.client.expire, key, ttl))

    async def incr(self, key: str, amount: int = 1) -> int:
        return int(await self._run("incrby", 0, self.client.incrby, key, amount))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._run("hincrby", 0, self.client.hincrby, key, field, amount))

    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        return float(
            await self._run("hincrbyfloat", 0.0, self.client.hincrbyfloat, key, field, amount)
        )

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(await self._run("hgetall", {}, self.client.hgetall, key) or {})

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self._run("sadd", 0, self.client.sadd, key, *members))

    async def srem(self, key: str, *members: str) -> int:
        return int(await self._run("srem", 0, self.client.srem, key, *members))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._run("smembers", set(), self.client.smembers, key) or set())

    async def keys(self, pattern: str) -> List[str]:
        async def _scan() -> List[str]:
            return [key async for key in self.client.scan_iter(match=pattern)]

        return list(await self._run("scan", [], _scan))

    async def close(self) -> None:
        try:
            await self.client.aclose()
            logger.info("redis_closed")
        except RedisError as e:
            logger.error("redis_close_failed", error=str(e), exc_info=True)


async def create_store(redis_url: Optional[str]) -> Tuple[KeyValueStore, str]:
    """
    Build the shared store.

    Returns:
        (store, backend) where backend is "redis" or "memory". Falls back to
        the in-memory store when Redis is not configured or not reachable.
    """
    if redis_url:
        logger.info("redis_initializing", url=redis_url)
        store = RedisKeyValueStore.from_url(redis_url)
        if await store.ping():
            logger.info("redis_initialized")
            return store, "redis"
        await store.close()
        logger.warning(
            "redis_unavailable",
            message="Falling back to in-process key-value store. "
                    "Experiment assignments will not be shared across workers.",
        )
    return InMemoryKeyValueStore(), "memory"
