from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger
from authcore.storage.models import PasswordRecord

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, principal_id: str) -> Optional[PasswordRecord]: ...


class PasswordVerifier:
    """argon2id hashing and verification against the credential store."""

    def __init__(self, store: CredentialStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash("authcore-timing-equalizer")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, principal_id: str, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(principal_id, pwd_hash, algo)

    def verify(self, principal_id: str, password: str) -> bool:
        record = self.store.get_password_record(principal_id)
        if not record:
            logger.warning("password_record_missing", principal_id=principal_id)
            return False
        if record.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", principal_id=principal_id, algo=record.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def burn(self, password: str) -> None:
        """Spend comparable hashing time when no principal matched."""
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass
