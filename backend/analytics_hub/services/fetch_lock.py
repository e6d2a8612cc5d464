"""
Single-flight de-duplication of live fetches per (company, date range).

In-process callers share one running fetch. Across processes an optional
Redis lock (SET NX with expiry) makes later callers wait for the first one,
after which they usually find the result in the on-demand cache. Neither
layer is needed for correctness: a lock that cannot be taken in time is
skipped and the caller fetches on its own.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Delete the key only if we still own it.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def _lock_key(name: str) -> str:
    return f"fetchlock:{name}"


class RedisFetchLock:
    def __init__(self, client: aioredis.Redis, *, ttl_sec: int = 120, wait_timeout_sec: float = 30.0) -> None:
        self._redis = client
        self._ttl_sec = ttl_sec
        self._wait_timeout_sec = wait_timeout_sec

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisFetchLock":
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    async def acquire(self, name: str) -> str | None:
        """Wait for the lock; returns the owner token, or None when it could not be taken."""
        key = _lock_key(name)
        token = str(uuid.uuid4())
        deadline = time.monotonic() + self._wait_timeout_sec
        backoff = 0.1
        while True:
            try:
                if await self._redis.set(key, token, nx=True, ex=self._ttl_sec):
                    logger.debug("[fetch_lock] Acquired '%s' (token=%s…)", name, token[:8])
                    return token
            except RedisError as exc:
                logger.warning("[fetch_lock] Redis unavailable, fetching without lock: %s", exc)
                return None

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info("[fetch_lock] Timed out waiting %.0fs for '%s'", self._wait_timeout_sec, name)
                return None
            await asyncio.sleep(min(backoff, remaining))
            backoff = min(backoff * 1.5, 2.0)

    async def release(self, name: str, token: str) -> None:
        try:
            released = await self._redis.eval(_RELEASE_SCRIPT, 1, _lock_key(name), token)
        except RedisError as exc:
            logger.warning("[fetch_lock] Release of '%s' failed: %s", name, exc)
            return
        if not released:
            logger.warning("[fetch_lock] Lock '%s' expired before release (token=%s…)", name, token[:8])

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        token = await self.acquire(name)
        try:
            yield token is not None
        finally:
            if token is not None:
                await self.release(name, token)

    async def close(self) -> None:
        await self._redis.aclose()


class SingleFlight:
    """Share one in-flight coroutine between concurrent callers with the same key."""

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future] = {}

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("[fetch_lock] Joining in-flight fetch for %s", key)
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(factory())
        self._inflight[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
