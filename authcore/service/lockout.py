from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.storage.models import LockoutState, Principal, PrincipalStatus

logger = get_logger(__name__)


class PrincipalStore(Protocol):
    def create_principal(
        self, email: str, status: PrincipalStatus = ..., *, now: datetime
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def set_principal_status(
        self, principal_id: str, status: PrincipalStatus
    ) -> Optional[Principal]: ...

    def increment_failed_attempts(
        self,
        email: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[LockoutState]: ...

    def reset_failed_attempts(self, email: str) -> bool: ...


class LockoutGuard:
    """Per-identifier failed-login counter with a timed lock.

    Callers check ``is_locked`` before verifying credentials and record the
    outcome only after verification has finished. The counter itself is an
    atomic increment-and-compare in the store, so concurrent failures never
    push the count past the threshold without locking.
    """

    def __init__(
        self,
        store: PrincipalStore,
        *,
        threshold: int = 5,
        cooldown_minutes: int = 30,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.clock = clock or SystemClock()

    def is_locked(self, identifier: str) -> bool:
        principal = self.store.get_principal_by_email(identifier)
        if principal is None:
            return False
        if principal.status == PrincipalStatus.BANNED:
            return True
        return principal.lockout.is_locked(self.clock.now())

    def retry_after_seconds(self, identifier: str) -> Optional[int]:
        principal = self.store.get_principal_by_email(identifier)
        if principal is None or principal.lockout.locked_until is None:
            return None
        remaining = (principal.lockout.locked_until - self.clock.now()).total_seconds()
        return max(0, int(remaining)) or None

    def record_failure(self, identifier: str) -> bool:
        now = self.clock.now()
        state = self.store.increment_failed_attempts(
            identifier,
            threshold=self.threshold,
            lock_until=now + self.cooldown,
            now=now,
        )
        if state is None:
            # Unknown identifiers are a silent no-op
            return False
        locked = state.is_locked(now)
        if locked:
            logger.warning(
                "lockout_triggered",
                identifier=identifier,
                locked_until=state.locked_until.isoformat(),
            )
        else:
            logger.info("login_failure_recorded", identifier=identifier)
        return locked

    def record_success(self, identifier: str) -> None:
        if self.store.reset_failed_attempts(identifier):
            logger.debug("lockout_reset", identifier=identifier)
