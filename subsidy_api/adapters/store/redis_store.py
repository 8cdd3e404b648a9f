"""Redis-backed key-value store.

Shared by every API instance, so counters and idempotency locks hold across
processes. Each primitive maps onto one atomic Redis operation:

- ``increment``: MULTI/EXEC transaction of ``SET key 0 EX window NX``,
  ``INCR key`` and ``PTTL key``
- ``set_if_absent``: ``SET key value EX ttl NX``
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from subsidy_api.adapters.store.base import (
    AbstractKeyValueStore,
    CounterSnapshot,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)


class RedisKeyValueStore(AbstractKeyValueStore):
    """Store implementation on top of ``redis.asyncio``.

    Backend failures are re-raised as ``StoreUnavailableError`` so callers
    apply their own fail-open / fail-closed policy.
    """

    def __init__(
        self,
        client: Redis,
        *,
        key_prefix: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._key_prefix = f"{key_prefix}:" if key_prefix else ""
        self._clock = clock

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        key_prefix: str = "",
        socket_timeout_seconds: float = 2.0,
    ) -> "RedisKeyValueStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _unavailable(self, operation: str, exc: RedisError) -> StoreUnavailableError:
        logger.warning(
            "store.redis_error",
            extra={"operation": operation, "error_type": type(exc).__name__, "error_msg": str(exc)},
        )
        return StoreUnavailableError(f"redis {operation} failed: {exc}")

    async def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        redis_key = self._key(key)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(redis_key, 0, ex=window_seconds, nx=True)
                pipe.incr(redis_key)
                pipe.pttl(redis_key)
                _, count, pttl_ms = await pipe.execute()
        except RedisError as exc:
            raise self._unavailable("increment", exc) from exc

        if pttl_ms is None or pttl_ms < 0:
            # Key without expiry (created outside this store); report a full window.
            pttl_ms = window_seconds * 1000

        ttl_seconds = pttl_ms / 1000
        return CounterSnapshot(
            count=int(count),
            reset_at=self._clock() + ttl_seconds,
            ttl_seconds=ttl_seconds,
        )

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            stored = await self._client.set(self._key(key), value, ex=ttl_seconds, nx=True)
        except RedisError as exc:
            raise self._unavailable("set_if_absent", exc) from exc
        return bool(stored)

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(self._key(key))
        except RedisError as exc:
            raise self._unavailable("get", exc) from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(self._key(key), value, ex=ttl_seconds)
        except RedisError as exc:
            raise self._unavailable("set", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except RedisError as exc:
            raise self._unavailable("delete", exc) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            logger.warning("store.redis_ping_failed", extra={"error_msg": str(exc)})
            return False

    async def close(self) -> None:
        await self._client.aclose()
