from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, List, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from edutenant.logging import get_logger

logger = get_logger(__name__)


def _decode(raw: Optional[str], key: str) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("credential_store_corrupt_entry", key=key.split(":", 1)[0])
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Redis-backed credential store: refresh, invite and reset entries plus rate limits.

    Values are JSON objects. ``pop`` is the only read that also removes, and it
    is atomic on the server, so at most one caller ever observes a given entry.
    """

    # Lua token bucket: atomic refill + consume
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
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so client-controlled parts cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return _decode(await self.client.get(key), key)

    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key))

    async def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds; -2 when absent, -1 when persistent."""
        return int(await self.client.ttl(key))

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete ``key``."""
        return _decode(await self.client.getdel(key), key)

    async def keys(self, prefix: str) -> List[str]:
        return [key async for key in self.client.scan_iter(match=f"{prefix}*")]

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable interface.

    Used under TEST_MODE so the client is never bound to one pytest event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        self.client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return _decode(self.client.get(key), key)

    async def delete(self, key: str) -> int:
        return int(self.client.delete(key))

    async def ttl(self, key: str) -> int:
        return int(self.client.ttl(key))

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        return _decode(self.client.getdel(key), key)

    async def keys(self, prefix: str) -> List[str]:
        return list(self.client.scan_iter(match=f"{prefix}*"))

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
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        self.client.close()
