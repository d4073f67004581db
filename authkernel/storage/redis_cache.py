from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for login/register rate limits and the event stream."""

    # Atomic refill + consume so concurrent requests cannot overdraw the bucket
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

    # Streams are capped so an absent consumer cannot grow them without bound
    STREAM_MAXLEN = 100_000

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        stream_prefix: str = "auth-events",
    ):
        self.redis_url = redis_url
        self.stream_prefix = stream_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Consume ``cost`` tokens from the bucket behind ``key``.

        The bucket holds ``limit`` tokens and refills at ``limit / window_seconds``
        tokens per second. Keys are hashed so user-supplied values (emails) are
        never written to Redis verbatim.
        """
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    def stream_key(self, topic: str) -> str:
        return f"{self.stream_prefix}:{topic}"

    async def publish_event(
        self, topic: str, key: Optional[str], payload: Dict[str, Any]
    ) -> str:
        """Append an event to the topic's stream and return the entry id."""
        fields = {"key": key or "", "payload": json.dumps(payload, default=str)}
        return await self.client.xadd(
            self.stream_key(topic), fields, maxlen=self.STREAM_MAXLEN, approximate=True
        )

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
