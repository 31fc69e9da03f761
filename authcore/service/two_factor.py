from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Protocol
from urllib.parse import quote, urlencode

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.storage.common import hash_backup_code
from authcore.storage.models import TwoFactorProfile, TwoFactorState

logger = get_logger(__name__)

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
TOTP_WINDOW_STEPS = 1
SECRET_BYTES = 20
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class TwoFactorStore(Protocol):
    def get_two_factor(self, principal_id: str) -> Optional[TwoFactorProfile]: ...

    def save_two_factor(self, profile: TwoFactorProfile) -> TwoFactorProfile: ...

    def consume_backup_code(self, principal_id: str, code_hash: str) -> bool: ...


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def generate_backup_codes(count: int = 10) -> List[str]:
    codes: set[str] = set()
    while len(codes) < count:
        codes.add(
            "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        )
    return sorted(codes)


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL_SECONDS,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string for an unusable secret."""
    normalized = secret.strip().replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    timestamp: float,
    *,
    window: int = TOTP_WINDOW_STEPS,
    interval: int = TOTP_INTERVAL_SECONDS,
) -> bool:
    if not secret or not code:
        return False
    candidate = code.strip().replace(" ", "")
    if not (candidate.isascii() and candidate.isdigit()) or len(candidate) != TOTP_DIGITS:
        return False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def provisioning_uri(secret: str, account_label: str, issuer: str) -> str:
    # Escape each part so a colon inside either cannot shift the separator
    label = f"{quote(issuer, safe='@')}:{quote(account_label, safe='@')}"
    query = urlencode({"secret": secret, "issuer": issuer}, quote_via=quote)
    return f"otpauth://totp/{label}?{query}"


@dataclass(frozen=True)
class Enrollment:
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


class TwoFactorAuth:
    """TOTP enrollment and verification with single-use backup codes.

    Enrollment is staged: ``begin_enrollment`` stores a pending secret and the
    digests of its backup codes, and only ``confirm_enrollment`` with a valid
    code makes them active.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        *,
        issuer: str = "AuthCore",
        backup_code_count: int = 10,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.backup_code_count = backup_code_count
        self.clock = clock or SystemClock()

    def _profile(self, principal_id: str) -> TwoFactorProfile:
        return self.store.get_two_factor(principal_id) or TwoFactorProfile(
            principal_id=principal_id
        )

    def begin_enrollment(
        self, principal_id: str, account_label: Optional[str] = None
    ) -> Enrollment:
        secret = generate_secret()
        codes = generate_backup_codes(self.backup_code_count)
        hashes: FrozenSet[str] = frozenset(hash_backup_code(c) for c in codes)
        staged = self._profile(principal_id).staged(secret, hashes, now=self.clock.now())
        self.store.save_two_factor(staged)
        logger.info("two_factor_enrollment_started", principal_id=principal_id)
        return Enrollment(
            secret=secret,
            provisioning_uri=provisioning_uri(
                secret, account_label or principal_id, self.issuer
            ),
            backup_codes=codes,
        )

    def confirm_enrollment(self, principal_id: str, staged_secret: str, code: str) -> bool:
        profile = self.store.get_two_factor(principal_id)
        if profile is None or not profile.pending_secret or not staged_secret:
            return False
        if not hmac.compare_digest(
            profile.pending_secret.encode(), staged_secret.encode("utf-8", "surrogateescape")
        ):
            logger.warning("two_factor_confirm_secret_mismatch", principal_id=principal_id)
            return False
        now = self.clock.now()
        if not verify_totp(staged_secret, code, now.timestamp()):
            logger.info("two_factor_confirm_rejected", principal_id=principal_id)
            return False
        self.store.save_two_factor(profile.activated(now=now))
        logger.info("two_factor_enabled", principal_id=principal_id)
        return True

    def disable(self, principal_id: str) -> None:
        profile = self.store.get_two_factor(principal_id)
        if profile is None or profile.state == TwoFactorState.DISABLED:
            return
        self.store.save_two_factor(profile.disabled(now=self.clock.now()))
        logger.info("two_factor_disabled", principal_id=principal_id)

    def is_enabled(self, principal_id: str) -> bool:
        profile = self.store.get_two_factor(principal_id)
        # The stored flag decides, even when the secret cannot be decrypted
        return profile is not None and profile.enabled

    def verify(self, principal_id: str, code: str, is_backup_code: bool = False) -> bool:
        profile = self.store.get_two_factor(principal_id)
        # Not enabled means every code is rejected
        if profile is None or not profile.enabled:
            return False
        if not code:
            return False
        if is_backup_code:
            consumed = self.store.consume_backup_code(principal_id, hash_backup_code(code))
            if consumed:
                logger.info("backup_code_consumed", principal_id=principal_id)
            return consumed
        if not profile.secret:
            logger.warning("two_factor_secret_unavailable", principal_id=principal_id)
            return False
        return verify_totp(profile.secret, code, self.clock.now().timestamp())
