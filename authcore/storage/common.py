"""Common storage utilities shared between memory and postgres implementations.

Keeps secret encryption, backup-code digests and the sweep selection rules in one
place so both backends behave identically.
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.models import Session

logger = get_logger(__name__)


# ============================================================================
# SECRET ENCRYPTION
# ============================================================================

class SecretCipher:
    """Fernet wrapper used to keep TOTP secrets encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Unable to initialize two-factor cipher: no key material")
        try:
            self._fernet = Fernet(self.derive_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize two-factor cipher") from exc

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # A secret that cannot be decrypted is unusable; treat as absent
            logger.warning("two_factor_secret_decrypt_failed")
            return None


# ============================================================================
# BACKUP CODES
# ============================================================================

def normalize_backup_code(code: str) -> str:
    return "".join(code.split()).replace("-", "").upper()


def hash_backup_code(code: str) -> str:
    """Digest of a normalized backup code; only digests are ever stored."""
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


# ============================================================================
# SESSIONS
# ============================================================================

def is_sweepable(session: Session, now: datetime) -> bool:
    return not session.active or session.expires_at < now


def select_sweepable_sessions(sessions: Iterable[Session], now: datetime) -> List[str]:
    """Pure selection over a snapshot: ids of sessions that are inactive or expired."""
    return [s.id for s in sessions if is_sweepable(s, now)]


# ============================================================================
# MISC
# ============================================================================

def normalize_email(email: str) -> str:
    return email.strip().lower()


def generate_uuid() -> str:
    return str(uuid.uuid4())
