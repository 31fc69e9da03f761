from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

from redis import Redis

from authcore.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper holding rate-limit buckets shared across workers."""

    KEY_PREFIX = "rate:"

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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, math.floor(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, math.floor(tokens), 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    @classmethod
    def _normalize_rate_key(cls, key: str) -> str:
        """Hash key components so client-supplied values cannot collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{cls.KEY_PREFIX}{digest}"

    def consume_token(
        self,
        key: str,
        *,
        capacity: int,
        refill_per_second: float,
        now: Optional[float] = None,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Refill then consume from the bucket at ``key``.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """

        safe_key = self._normalize_rate_key(key)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key],
            args=[
                time.time() if now is None else now,
                refill_per_second,
                capacity,
                max(1, cost),
            ],
        )
        return (
            bool(int(allowed)),
            max(0, int(tokens)),
            int(reset_after) if reset_after else 0,
        )

    def reset_rate_limits(self) -> int:
        removed = 0
        batch: list[str] = []
        for key in self.client.scan_iter(match=f"{self.KEY_PREFIX}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += self.client.delete(*batch)
                batch = []
        if batch:
            removed += self.client.delete(*batch)
        logger.info("redis_rate_limits_reset", removed=removed)
        return removed

    def close(self) -> None:
        self.client.close()
