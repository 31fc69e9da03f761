from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.service.lockout import LockoutGuard
from authcore.service.login import LoginFlow
from authcore.service.passwords import PasswordVerifier
from authcore.service.rate_limit import RateLimiter
from authcore.service.sessions import SessionRegistry
from authcore.service.sweeper import SweepJob, SweepScheduler
from authcore.service.tokens import TokenAuthority, VerificationCache
from authcore.service.two_factor import TwoFactorAuth
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        secret_key = self.settings.two_factor_encryption_key or self.settings.jwt_secret
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    secret_key=secret_key,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, secret_key=secret_key)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.settings.redis_url and not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis, unset REDIS_URL, "
                    "or set ALLOW_REDIS_FALLBACK_DEV=true for in-process rate limits."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Rate limit buckets are process-local only.",
            )

        self.tokens = TokenAuthority(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            validity_seconds=self.settings.token_validity_seconds,
            clock=self.clock,
            cache=VerificationCache(self.settings.token_cache_max_per_subject),
        )
        self.sessions = SessionRegistry(
            self.store, ttl_hours=self.settings.session_ttl_hours, clock=self.clock
        )
        self.lockout = LockoutGuard(
            self.store,
            threshold=self.settings.lockout_threshold,
            cooldown_minutes=self.settings.lockout_cooldown_minutes,
            clock=self.clock,
        )
        self.two_factor = TwoFactorAuth(
            self.store,
            issuer=self.settings.two_factor_issuer,
            backup_code_count=self.settings.backup_code_count,
            clock=self.clock,
        )
        self.rate_limiter = RateLimiter(cache=self.cache, clock=self.clock)
        self.passwords = PasswordVerifier(self.store)
        self.login = LoginFlow(
            principals=self.store,
            passwords=self.passwords,
            lockout=self.lockout,
            two_factor=self.two_factor,
            sessions=self.sessions,
            tokens=self.tokens,
            two_factor_token_ttl_seconds=self.settings.two_factor_token_ttl_seconds,
        )
        self.scheduler = SweepScheduler(
            [
                SweepJob(
                    "token_cache",
                    self.settings.token_cache_sweep_interval_seconds,
                    self.tokens.sweep_expired,
                ),
                SweepJob(
                    "sessions",
                    self.settings.session_sweep_interval_seconds,
                    self.sessions.sweep_expired,
                ),
                SweepJob(
                    "rate_limits",
                    self.settings.rate_limit_reset_interval_seconds,
                    self.rate_limiter.reset_all,
                ),
            ],
            clock=self.clock,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            lockout_threshold=self.settings.lockout_threshold,
            session_ttl_hours=self.settings.session_ttl_hours,
        )

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
