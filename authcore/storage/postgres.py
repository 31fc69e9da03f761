from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import SecretCipher, generate_uuid, normalize_email
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    LockoutState,
    PasswordRecord,
    Principal,
    PrincipalStatus,
    Session,
    TwoFactorProfile,
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'active',
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_credential (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        ip_address TEXT,
        user_agent TEXT,
        device_info TEXT NOT NULL DEFAULT 'Unknown',
        created_at TIMESTAMPTZ NOT NULL,
        last_active_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_principal_idx ON auth_session (principal_id)",
    """
    CREATE TABLE IF NOT EXISTS two_factor_profile (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        secret TEXT,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        pending_secret TEXT,
        pending_backup_codes TEXT[] NOT NULL DEFAULT '{}',
        updated_at TIMESTAMPTZ
    )
    """,
)

# One statement so concurrent failures cannot overshoot the threshold.
# Column references on the right-hand side see the pre-update row.
_INCREMENT_FAILED_ATTEMPTS_SQL = """
UPDATE principal SET
    failed_attempts = CASE
        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
        ELSE failed_attempts + 1
    END,
    locked_until = CASE
        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN
            CASE WHEN 1 >= %(threshold)s THEN %(lock_until)s ELSE NULL END
        WHEN locked_until IS NULL AND failed_attempts + 1 >= %(threshold)s THEN %(lock_until)s
        ELSE locked_until
    END
WHERE email = %(email)s
RETURNING failed_attempts, locked_until
"""


class PostgresStore:
    """Postgres-backed store using row-level atomic updates for counters."""

    def __init__(self, dsn: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(secret_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # principals
    @staticmethod
    def _principal_from_row(row: dict) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            status=PrincipalStatus(row.get("status") or PrincipalStatus.ACTIVE.value),
            created_at=row["created_at"],
            lockout=LockoutState(
                failed_attempts=int(row.get("failed_attempts") or 0),
                locked_until=row.get("locked_until"),
            ),
        )

    def create_principal(
        self,
        email: str,
        status: PrincipalStatus = PrincipalStatus.ACTIVE,
        *,
        now: datetime,
    ) -> Principal:
        principal_id = generate_uuid()
        normalized = normalize_email(email)
        status = PrincipalStatus(status)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (id, email, status, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (principal_id, normalized, status.value, now),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return Principal(id=principal_id, email=normalized, status=status, created_at=now)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def set_principal_status(
        self, principal_id: str, status: PrincipalStatus
    ) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET status = %s WHERE id = %s RETURNING *",
                (PrincipalStatus(status).value, principal_id),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def increment_failed_attempts(
        self,
        email: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[LockoutState]:
        with self._connect() as conn:
            row = conn.execute(
                _INCREMENT_FAILED_ATTEMPTS_SQL,
                {
                    "email": normalize_email(email),
                    "threshold": threshold,
                    "lock_until": lock_until,
                    "now": now,
                },
            ).fetchone()
        if not row:
            return None
        return LockoutState(
            failed_attempts=int(row["failed_attempts"]),
            locked_until=row.get("locked_until"),
        )

    def reset_failed_attempts(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal SET failed_attempts = 0, locked_until = NULL
                WHERE email = %s
                RETURNING id
                """,
                (normalize_email(email),),
            ).fetchone()
        return row is not None

    # credentials
    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal_credential (principal_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (principal_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (principal_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found for credentials", {"principal_id": principal_id}
            )

    def get_password_record(self, principal_id: str) -> Optional[PasswordRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT password_hash, password_algo, last_updated_at
                FROM principal_credential WHERE principal_id = %s
                """,
                (principal_id,),
            ).fetchone()
        if not row:
            return None
        return PasswordRecord(
            principal_id=principal_id,
            password_hash=str(row["password_hash"]),
            password_algo=str(row["password_algo"]),
            updated_at=row.get("last_updated_at"),
        )

    # sessions
    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            created_at=row["created_at"],
            last_active_at=row["last_active_at"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_info=row.get("device_info") or "Unknown",
            active=bool(row.get("active", True)),
        )

    def save_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, principal_id, ip_address, user_agent, device_info, created_at, last_active_at, expires_at, active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.principal_id,
                        session.ip_address,
                        session.user_agent,
                        session.device_info,
                        session.created_at,
                        session.last_active_at,
                        session.expires_at,
                        session.active,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal does not exist", {"principal_id": session.principal_id}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> Optional[Session]:
        # Last writer wins for last_active_at
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET last_active_at = %s WHERE id = %s RETURNING *",
                (now, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET active = FALSE WHERE id = %s RETURNING id",
                (session_id,),
            ).fetchone()
        return row is not None

    def deactivate_principal_sessions(
        self, principal_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id is None:
                result = conn.execute(
                    "UPDATE auth_session SET active = FALSE WHERE principal_id = %s AND active",
                    (principal_id,),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE auth_session SET active = FALSE
                    WHERE principal_id = %s AND active AND id <> %s
                    """,
                    (principal_id, except_session_id),
                )
            return result.rowcount

    def list_sessions(
        self,
        principal_id: str,
        *,
        active_only: bool = False,
        now: Optional[datetime] = None,
    ) -> List[Session]:
        if active_only and now is None:
            raise ValueError("now is required when active_only is set")
        with self._connect() as conn:
            if active_only:
                rows = conn.execute(
                    """
                    SELECT * FROM auth_session
                    WHERE principal_id = %s AND active AND expires_at > %s
                    ORDER BY last_active_at DESC
                    """,
                    (principal_id, now),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM auth_session WHERE principal_id = %s
                    ORDER BY last_active_at DESC
                    """,
                    (principal_id,),
                ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_invalid_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE NOT active OR expires_at < %s",
                (now,),
            )
            return result.rowcount

    # two-factor
    def _two_factor_from_row(self, row: dict) -> TwoFactorProfile:
        return TwoFactorProfile(
            principal_id=str(row["principal_id"]),
            secret=self._cipher.decrypt(row.get("secret")),
            backup_codes=frozenset(row.get("backup_codes") or ()),
            enabled=bool(row.get("enabled", False)),
            pending_secret=self._cipher.decrypt(row.get("pending_secret")),
            pending_backup_codes=frozenset(row.get("pending_backup_codes") or ()),
            updated_at=row.get("updated_at"),
        )

    def get_two_factor(self, principal_id: str) -> Optional[TwoFactorProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_profile WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        return self._two_factor_from_row(row) if row else None

    def save_two_factor(self, profile: TwoFactorProfile) -> TwoFactorProfile:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO two_factor_profile (principal_id, secret, backup_codes, enabled, pending_secret, pending_backup_codes, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (principal_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        backup_codes = EXCLUDED.backup_codes,
                        enabled = EXCLUDED.enabled,
                        pending_secret = EXCLUDED.pending_secret,
                        pending_backup_codes = EXCLUDED.pending_backup_codes,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        profile.principal_id,
                        self._cipher.encrypt(profile.secret),
                        sorted(profile.backup_codes),
                        profile.enabled,
                        self._cipher.encrypt(profile.pending_secret),
                        sorted(profile.pending_backup_codes),
                        profile.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found for two-factor",
                {"principal_id": profile.principal_id},
            )
        return profile

    def consume_backup_code(self, principal_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row: Any = conn.execute(
                """
                UPDATE two_factor_profile
                SET backup_codes = array_remove(backup_codes, %s)
                WHERE principal_id = %s AND enabled AND %s = ANY(backup_codes)
                RETURNING principal_id
                """,
                (code_hash, principal_id, code_hash),
            ).fetchone()
        return row is not None
