from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import (
    SecretCipher,
    generate_uuid,
    normalize_email,
    select_sweepable_sessions,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    LockoutState,
    PasswordRecord,
    Principal,
    PrincipalStatus,
    Session,
    TwoFactorProfile,
)


class MemoryStore:
    """In-process backing store with a JSON snapshot on disk.

    Every mutation runs under one re-entrant lock, which is what makes the
    lockout increment and backup-code consumption atomic.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/authcore",
        *,
        secret_key: str,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.sessions: Dict[str, Session] = {}
        self.two_factor: Dict[str, TwoFactorProfile] = {}
        # RLock so helpers can re-enter from inside a locked mutation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        self._cipher = SecretCipher(secret_key)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # principals
    def create_principal(
        self,
        email: str,
        status: PrincipalStatus = PrincipalStatus.ACTIVE,
        *,
        now: datetime,
    ) -> Principal:
        with self._data_lock:
            normalized = normalize_email(email)
            if self._find_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=generate_uuid(),
                email=normalized,
                status=PrincipalStatus(status),
                created_at=now,
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return principal

    def _find_by_email(self, normalized_email: str) -> Optional[Principal]:
        return next(
            (p for p in self.principals.values() if p.email == normalized_email), None
        )

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            return self._find_by_email(normalize_email(email))

    def set_principal_status(
        self, principal_id: str, status: PrincipalStatus
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            updated = principal.with_status(PrincipalStatus(status))
            self.principals[principal_id] = updated
            self._persist_state()
            return updated

    def increment_failed_attempts(
        self,
        email: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[LockoutState]:
        with self._data_lock:
            principal = self._find_by_email(normalize_email(email))
            if not principal:
                return None
            lockout = principal.lockout.incremented(
                threshold=threshold, lock_until=lock_until, now=now
            )
            self.principals[principal.id] = principal.with_lockout(lockout)
            self._persist_state()
            return lockout

    def reset_failed_attempts(self, email: str) -> bool:
        with self._data_lock:
            principal = self._find_by_email(normalize_email(email))
            if not principal:
                return False
            if principal.lockout != LockoutState():
                self.principals[principal.id] = principal.with_lockout(
                    principal.lockout.cleared()
                )
                self._persist_state()
            return True

    # credentials
    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for credentials", {"principal_id": principal_id}
                )
            self.credentials[principal_id] = PasswordRecord(
                principal_id=principal_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self._persist_state()

    def get_password_record(self, principal_id: str) -> Optional[PasswordRecord]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    # sessions
    def save_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal does not exist", {"principal_id": session.principal_id}
                )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def touch_session(self, session_id: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            touched = session.touched(now)
            # last_active_at is not written to the snapshot on every request
            self.sessions[session_id] = touched
            return touched

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return False
            if session.active:
                self.sessions[session_id] = session.terminated()
                self._persist_state()
            return True

    def deactivate_principal_sessions(
        self, principal_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            targets = [
                s
                for s in self.sessions.values()
                if s.principal_id == principal_id
                and s.active
                and s.id != except_session_id
            ]
            for session in targets:
                self.sessions[session.id] = session.terminated()
            if targets:
                self._persist_state()
            return len(targets)

    def list_sessions(
        self,
        principal_id: str,
        *,
        active_only: bool = False,
        now: Optional[datetime] = None,
    ) -> List[Session]:
        with self._data_lock:
            results = [s for s in self.sessions.values() if s.principal_id == principal_id]
        if active_only:
            if now is None:
                raise ValueError("now is required when active_only is set")
            results = [s for s in results if s.is_valid(now)]
        return sorted(results, key=lambda s: s.last_active_at, reverse=True)

    def delete_invalid_sessions(self, now: datetime) -> int:
        with self._data_lock:
            snapshot = dict(self.sessions)
        removed = 0
        for session_id in select_sweepable_sessions(snapshot.values(), now):
            with self._data_lock:
                current = self.sessions.get(session_id)
                # Skip sessions replaced since the snapshot was taken
                if current is None or current is not snapshot[session_id]:
                    continue
                del self.sessions[session_id]
                removed += 1
        if removed:
            with self._data_lock:
                self._persist_state()
        return removed

    # two-factor
    def get_two_factor(self, principal_id: str) -> Optional[TwoFactorProfile]:
        with self._data_lock:
            stored = self.two_factor.get(principal_id)
            if not stored:
                return None
            return self._decrypt_profile(stored)

    def save_two_factor(self, profile: TwoFactorProfile) -> TwoFactorProfile:
        with self._data_lock:
            if profile.principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for two-factor",
                    {"principal_id": profile.principal_id},
                )
            self.two_factor[profile.principal_id] = self._encrypt_profile(profile)
            self._persist_state()
            return profile

    def consume_backup_code(self, principal_id: str, code_hash: str) -> bool:
        with self._data_lock:
            stored = self.two_factor.get(principal_id)
            if not stored or not stored.enabled or code_hash not in stored.backup_codes:
                return False
            self.two_factor[principal_id] = stored.without_backup_code(code_hash)
            self._persist_state()
            return True

    def _encrypt_profile(self, profile: TwoFactorProfile) -> TwoFactorProfile:
        return TwoFactorProfile(
            principal_id=profile.principal_id,
            secret=self._cipher.encrypt(profile.secret),
            backup_codes=profile.backup_codes,
            enabled=profile.enabled,
            pending_secret=self._cipher.encrypt(profile.pending_secret),
            pending_backup_codes=profile.pending_backup_codes,
            updated_at=profile.updated_at,
        )

    def _decrypt_profile(self, profile: TwoFactorProfile) -> TwoFactorProfile:
        return TwoFactorProfile(
            principal_id=profile.principal_id,
            secret=self._cipher.decrypt(profile.secret),
            backup_codes=profile.backup_codes,
            enabled=profile.enabled,
            pending_secret=self._cipher.decrypt(profile.pending_secret),
            pending_backup_codes=profile.pending_backup_codes,
            updated_at=profile.updated_at,
        )

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "credentials": [
                {
                    "principal_id": rec.principal_id,
                    "password_hash": rec.password_hash,
                    "password_algo": rec.password_algo,
                }
                for rec in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "two_factor": [
                self._serialize_two_factor(tf) for tf in self.two_factor.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.credentials = {
            entry["principal_id"]: PasswordRecord(
                principal_id=entry["principal_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", ""),
            )
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.two_factor = {
            tf["principal_id"]: self._deserialize_two_factor(tf)
            for tf in data.get("two_factor", [])
        }
        self.logger.info(
            "memory_store_loaded",
            principals=len(self.principals),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "email": principal.email,
            "status": principal.status.value,
            "created_at": self._serialize_datetime(principal.created_at),
            "failed_attempts": principal.lockout.failed_attempts,
            "locked_until": self._serialize_datetime(principal.lockout.locked_until),
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        return Principal(
            id=str(data["id"]),
            email=data["email"],
            status=PrincipalStatus(data.get("status", PrincipalStatus.ACTIVE.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            lockout=LockoutState(
                failed_attempts=int(data.get("failed_attempts", 0)),
                locked_until=self._deserialize_datetime(data.get("locked_until")),
            ),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "principal_id": session.principal_id,
            "created_at": self._serialize_datetime(session.created_at),
            "last_active_at": self._serialize_datetime(session.last_active_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "device_info": session.device_info,
            "active": session.active,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            principal_id=data["principal_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_active_at=self._deserialize_datetime(data["last_active_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_info=data.get("device_info", "Unknown"),
            active=bool(data.get("active", True)),
        )

    def _serialize_two_factor(self, profile: TwoFactorProfile) -> dict:
        # secrets are already encrypted in self.two_factor
        return {
            "principal_id": profile.principal_id,
            "secret": profile.secret,
            "backup_codes": sorted(profile.backup_codes),
            "enabled": profile.enabled,
            "pending_secret": profile.pending_secret,
            "pending_backup_codes": sorted(profile.pending_backup_codes),
            "updated_at": self._serialize_datetime(profile.updated_at),
        }

    def _deserialize_two_factor(self, data: dict) -> TwoFactorProfile:
        return TwoFactorProfile(
            principal_id=data["principal_id"],
            secret=data.get("secret"),
            backup_codes=frozenset(data.get("backup_codes", [])),
            enabled=bool(data.get("enabled", False)),
            pending_secret=data.get("pending_secret"),
            pending_backup_codes=frozenset(data.get("pending_backup_codes", [])),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )
