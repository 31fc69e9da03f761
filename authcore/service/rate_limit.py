from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.storage.models import RateBucket
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateCategory(str, Enum):
    AUTHENTICATION = "authentication"
    REGISTRATION = "registration"
    VERIFICATION = "verification"
    GENERAL = "general"


@dataclass(frozen=True)
class RatePolicy:
    capacity: int
    refill_per_minute: int

    @property
    def refill_per_second(self) -> float:
        return self.refill_per_minute / 60.0


# Fixed policy; buckets refill continuously at capacity per minute
RATE_POLICIES: Dict[RateCategory, RatePolicy] = {
    RateCategory.AUTHENTICATION: RatePolicy(capacity=5, refill_per_minute=5),
    RateCategory.REGISTRATION: RatePolicy(capacity=3, refill_per_minute=3),
    RateCategory.VERIFICATION: RatePolicy(capacity=10, refill_per_minute=10),
    RateCategory.GENERAL: RatePolicy(capacity=30, refill_per_minute=30),
}

_CATEGORY_PREFIXES: Tuple[Tuple[str, RateCategory], ...] = (
    ("/auth/login", RateCategory.AUTHENTICATION),
    ("/auth/2fa/verify", RateCategory.AUTHENTICATION),
    ("/users/register", RateCategory.REGISTRATION),
    ("/users/verify", RateCategory.VERIFICATION),
)

STATIC_PREFIXES = ("/static/", "/css/", "/js/", "/images/", "/favicon.ico")


def resolve_category(path: str) -> Optional[RateCategory]:
    """Category for a request path; ``None`` for static assets, which bypass limiting."""
    if path.startswith(STATIC_PREFIXES):
        return None
    for prefix, category in _CATEGORY_PREFIXES:
        if path.startswith(prefix):
            return category
    return RateCategory.GENERAL


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int


def consume_from_bucket(bucket: RateBucket, now: float) -> Tuple[RateBucket, RateDecision]:
    """Refill ``bucket`` up to ``now`` and try to take one token."""
    refilled = bucket.refilled(now)
    if refilled.tokens >= 1:
        after = refilled.consumed()
        return after, RateDecision(True, int(after.tokens), 0)
    wait = math.ceil(round((1 - refilled.tokens) / refilled.refill_per_second, 6))
    return refilled, RateDecision(False, 0, max(1, wait))


class RateLimiter:
    """Per-client token buckets, one per (client ip, category).

    Buckets live in Redis when a cache is supplied so every worker shares them;
    otherwise in a process-local map guarded by striped locks.
    """

    def __init__(
        self,
        *,
        cache: Optional[RedisCache] = None,
        clock: Optional[Clock] = None,
        policies: Optional[Dict[RateCategory, RatePolicy]] = None,
        stripes: int = 64,
    ) -> None:
        self.cache = cache
        self.clock = clock or SystemClock()
        self.policies = dict(policies or RATE_POLICIES)
        self._buckets: Dict[Tuple[str, RateCategory], RateBucket] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, key: Tuple[str, RateCategory]) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def try_consume(self, client_ip: str, category: RateCategory) -> RateDecision:
        policy = self.policies[category]
        client = client_ip or "unknown"
        if self.cache is not None:
            try:
                allowed, remaining, retry_after = self.cache.consume_token(
                    f"{category.value}:{client}",
                    capacity=policy.capacity,
                    refill_per_second=policy.refill_per_second,
                )
                return RateDecision(allowed, remaining, retry_after if not allowed else 0)
            except RedisError as exc:
                logger.warning(
                    "rate_limit_redis_unavailable", error=str(exc), category=category.value
                )
        return self._consume_local((client, category), policy)

    def _consume_local(
        self, key: Tuple[str, RateCategory], policy: RatePolicy
    ) -> RateDecision:
        now = self.clock.monotonic()
        with self._lock_for(key):
            bucket = self._buckets.get(key) or RateBucket(
                capacity=policy.capacity,
                tokens=float(policy.capacity),
                refill_per_second=policy.refill_per_second,
                last_refill=now,
            )
            bucket, decision = consume_from_bucket(bucket, now)
            self._buckets[key] = bucket
        if not decision.allowed:
            logger.info(
                "rate_limited",
                client_ip=key[0],
                category=key[1].value,
                retry_after_seconds=decision.retry_after_seconds,
            )
        return decision

    def bucket_count(self) -> int:
        return len(self._buckets)

    def reset_all(self) -> None:
        local = len(self._buckets)
        self._buckets.clear()
        if self.cache is not None:
            self.cache.reset_rate_limits()
        logger.info("rate_limits_reset", local_buckets=local)
