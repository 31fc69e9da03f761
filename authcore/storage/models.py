from __future__ import annotations

import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class PrincipalStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BANNED = "banned"
    PENDING = "pending"

    @property
    def can_login(self) -> bool:
        return self in (PrincipalStatus.ACTIVE, PrincipalStatus.PENDING)


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def lock_expired(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until <= now

    def incremented(
        self, *, threshold: int, lock_until: datetime, now: datetime
    ) -> "LockoutState":
        """Count one more failure, locking once the count reaches ``threshold``.

        A lock whose cooldown already passed starts a fresh window.
        """
        base = LockoutState() if self.lock_expired(now) else self
        attempts = base.failed_attempts + 1
        locked_until = base.locked_until
        if attempts >= threshold and locked_until is None:
            locked_until = lock_until
        return LockoutState(failed_attempts=attempts, locked_until=locked_until)

    def cleared(self) -> "LockoutState":
        return LockoutState()


@dataclass(frozen=True)
class Principal:
    id: str
    email: str
    status: PrincipalStatus
    created_at: datetime
    lockout: LockoutState = field(default_factory=LockoutState)

    def with_lockout(self, lockout: LockoutState) -> "Principal":
        return replace(self, lockout=lockout)

    def with_status(self, status: PrincipalStatus) -> "Principal":
        return replace(self, status=status)


@dataclass(frozen=True)
class PasswordRecord:
    principal_id: str
    password_hash: str
    password_algo: str
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Session:
    id: str
    principal_id: str
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: str = "Unknown"
    active: bool = True

    @classmethod
    def new(
        cls,
        principal_id: str,
        *,
        now: datetime,
        ttl: timedelta,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: str = "Unknown",
    ) -> "Session":
        return cls(
            id=secrets.token_urlsafe(24),
            principal_id=principal_id,
            created_at=now,
            last_active_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
            active=True,
        )

    def touched(self, now: datetime) -> "Session":
        # expires_at is fixed at creation
        return replace(self, last_active_at=now)

    def terminated(self) -> "Session":
        return replace(self, active=False)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def is_valid(self, now: datetime) -> bool:
        return self.active and now < self.expires_at


class TwoFactorState(str, Enum):
    UNSET = "unset"
    PENDING = "pending"
    ENABLED = "enabled"
    DISABLED = "disabled"


@dataclass(frozen=True)
class TwoFactorProfile:
    """Second-factor enrollment for one principal.

    ``secret`` and ``backup_codes`` are the active material used by ``verify``;
    ``pending_*`` hold an enrollment that has not been confirmed yet. Backup codes
    are kept as digests only.
    """

    principal_id: str
    secret: Optional[str] = None
    backup_codes: FrozenSet[str] = frozenset()
    enabled: bool = False
    pending_secret: Optional[str] = None
    pending_backup_codes: FrozenSet[str] = frozenset()
    updated_at: Optional[datetime] = None

    @property
    def state(self) -> TwoFactorState:
        if self.enabled:
            return TwoFactorState.ENABLED
        if self.pending_secret:
            return TwoFactorState.PENDING
        if self.updated_at is not None:
            return TwoFactorState.DISABLED
        return TwoFactorState.UNSET

    def staged(
        self, secret: str, backup_code_hashes: FrozenSet[str], *, now: datetime
    ) -> "TwoFactorProfile":
        return replace(
            self,
            pending_secret=secret,
            pending_backup_codes=frozenset(backup_code_hashes),
            updated_at=now,
        )

    def activated(self, *, now: datetime) -> "TwoFactorProfile":
        return replace(
            self,
            secret=self.pending_secret,
            backup_codes=self.pending_backup_codes,
            enabled=True,
            pending_secret=None,
            pending_backup_codes=frozenset(),
            updated_at=now,
        )

    def disabled(self, *, now: datetime) -> "TwoFactorProfile":
        return TwoFactorProfile(principal_id=self.principal_id, updated_at=now)

    def without_backup_code(self, code_hash: str) -> "TwoFactorProfile":
        return replace(self, backup_codes=self.backup_codes - {code_hash})


@dataclass(frozen=True)
class RateBucket:
    capacity: int
    tokens: float
    refill_per_second: float
    last_refill: float

    def refilled(self, now: float) -> "RateBucket":
        elapsed = max(0.0, now - self.last_refill)
        tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_per_second)
        # Drop float noise so a full refill interval yields a whole token
        tokens = round(tokens, 9)
        return replace(self, tokens=tokens, last_refill=now)

    def consumed(self) -> "RateBucket":
        return replace(self, tokens=self.tokens - 1)


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    issued_at: int
    expires_at: int
    session_id: Optional[str] = None
    token_type: str = "access"
    claims: Dict[str, Any] = field(default_factory=dict)
