from __future__ import annotations

import hashlib
import json
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from hidauth.logging import get_logger
from hidauth.service.errors import TransientStoreError

logger = get_logger(__name__)

_PENDING_PREFIX = "oauth:pending:"


class RedisCache:
    """Thin Redis wrapper for rate limits and pending OAuth authorizations."""

    # Lua token bucket script: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url, decode_responses=True, socket_timeout=self.socket_timeout
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so user input cannot collide with other keys."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _decode_rate_result(
        result, return_remaining: bool
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed, tokens, reset_after = result
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        try:
            result = await self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_rate_limit_unavailable", error=str(exc))
            raise TransientStoreError() from exc
        return self._decode_rate_result(result, return_remaining)

    async def set_pending_authorization(
        self, transaction_id: str, payload: dict, ttl_seconds: int
    ) -> None:
        try:
            await self.client.set(
                f"{_PENDING_PREFIX}{transaction_id}",
                json.dumps(payload),
                ex=max(1, int(ttl_seconds)),
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_pending_authorization_unavailable", error=str(exc))
            raise TransientStoreError() from exc

    async def pop_pending_authorization(self, transaction_id: str) -> Optional[dict]:
        """Atomically get and delete a pending authorization so it decides once."""
        try:
            cached = await self.client.getdel(f"{_PENDING_PREFIX}{transaction_id}")
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_pending_authorization_unavailable", error=str(exc))
            raise TransientStoreError() from exc
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted data - already deleted
            return None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        try:
            result = self._token_bucket(
                keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise TransientStoreError() from exc
        return RedisCache._decode_rate_result(result, return_remaining)

    async def set_pending_authorization(
        self, transaction_id: str, payload: dict, ttl_seconds: int
    ) -> None:
        try:
            self._sync_client.set(
                f"{_PENDING_PREFIX}{transaction_id}",
                json.dumps(payload),
                ex=max(1, int(ttl_seconds)),
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise TransientStoreError() from exc

    async def pop_pending_authorization(self, transaction_id: str) -> Optional[dict]:
        try:
            cached = self._sync_client.getdel(f"{_PENDING_PREFIX}{transaction_id}")
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise TransientStoreError() from exc
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def close(self) -> None:
        self._sync_client.close()
