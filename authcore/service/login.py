from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from authcore.logging import get_logger
from authcore.service.lockout import LockoutGuard, PrincipalStore
from authcore.service.passwords import PasswordVerifier
from authcore.service.sessions import SessionRegistry
from authcore.service.tokens import (
    ACCESS_TOKEN_TYPE,
    TWO_FACTOR_TOKEN_TYPE,
    TokenAuthority,
    TokenParseError,
)
from authcore.service.two_factor import TwoFactorAuth
from authcore.storage.models import Principal, Session

logger = get_logger(__name__)


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED = "locked"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    TWO_FACTOR_INVALID = "two_factor_invalid"


@dataclass(frozen=True)
class LoginResult:
    outcome: LoginOutcome
    principal_id: Optional[str] = None
    access_token: Optional[str] = None
    session: Optional[Session] = None
    two_factor_token: Optional[str] = None
    expires_in: Optional[int] = None
    retry_after_seconds: Optional[int] = None


class LoginFlow:
    """Password login as one unit of work: lockout check, credential check,
    outcome recording, optional second factor, then session and token.
    """

    def __init__(
        self,
        *,
        principals: PrincipalStore,
        passwords: PasswordVerifier,
        lockout: LockoutGuard,
        two_factor: TwoFactorAuth,
        sessions: SessionRegistry,
        tokens: TokenAuthority,
        two_factor_token_ttl_seconds: int = 300,
    ) -> None:
        self.principals = principals
        self.passwords = passwords
        self.lockout = lockout
        self.two_factor = two_factor
        self.sessions = sessions
        self.tokens = tokens
        self.two_factor_token_ttl_seconds = two_factor_token_ttl_seconds

    def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        # Lock check must precede any credential work
        if self.lockout.is_locked(email):
            logger.info("login_rejected_locked", email=email)
            return LoginResult(
                LoginOutcome.LOCKED,
                retry_after_seconds=self.lockout.retry_after_seconds(email),
            )

        principal = self.principals.get_principal_by_email(email)
        if principal is None:
            self.passwords.burn(password)
            logger.info("login_failed", reason="unknown_identifier")
            return LoginResult(LoginOutcome.INVALID_CREDENTIALS)

        if not self.passwords.verify(principal.id, password):
            self.lockout.record_failure(email)
            logger.info("login_failed", reason="bad_password", principal_id=principal.id)
            return LoginResult(LoginOutcome.INVALID_CREDENTIALS)

        if not principal.status.can_login:
            logger.info(
                "login_failed",
                reason="status",
                principal_id=principal.id,
                status=principal.status.value,
            )
            return LoginResult(LoginOutcome.INVALID_CREDENTIALS)

        self.lockout.record_success(email)

        if self.two_factor.is_enabled(principal.id):
            temp_token = self.tokens.issue(
                principal.id,
                {"type": TWO_FACTOR_TOKEN_TYPE},
                ttl_seconds=self.two_factor_token_ttl_seconds,
            )
            logger.info("login_two_factor_required", principal_id=principal.id)
            return LoginResult(
                LoginOutcome.TWO_FACTOR_REQUIRED,
                principal_id=principal.id,
                two_factor_token=temp_token,
                expires_in=self.two_factor_token_ttl_seconds,
            )

        return self._establish(principal, ip_address=ip_address, user_agent=user_agent)

    def complete_two_factor(
        self,
        two_factor_token: str,
        code: str,
        *,
        is_backup_code: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        try:
            claims = self.tokens.parse(two_factor_token)
        except TokenParseError:
            return LoginResult(LoginOutcome.INVALID_CREDENTIALS)
        if claims.token_type != TWO_FACTOR_TOKEN_TYPE or not self.tokens.verify(
            two_factor_token, claims.subject
        ):
            return LoginResult(LoginOutcome.INVALID_CREDENTIALS)

        principal = self.principals.get_principal(claims.subject)
        if principal is None or not principal.status.can_login:
            return LoginResult(LoginOutcome.INVALID_CREDENTIALS)
        if self.lockout.is_locked(principal.email):
            return LoginResult(
                LoginOutcome.LOCKED,
                retry_after_seconds=self.lockout.retry_after_seconds(principal.email),
            )

        if not self.two_factor.verify(principal.id, code, is_backup_code):
            logger.info(
                "login_two_factor_rejected",
                principal_id=principal.id,
                backup=is_backup_code,
            )
            return LoginResult(LoginOutcome.TWO_FACTOR_INVALID, principal_id=principal.id)

        return self._establish(principal, ip_address=ip_address, user_agent=user_agent)

    def _establish(
        self,
        principal: Principal,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> LoginResult:
        session = self.sessions.create(
            principal.id, ip_address=ip_address, user_agent=user_agent
        )
        token = self.tokens.issue(
            principal.id, {"sid": session.id, "type": ACCESS_TOKEN_TYPE}
        )
        logger.info("login_succeeded", principal_id=principal.id, session_id=session.id)
        return LoginResult(
            LoginOutcome.SUCCESS,
            principal_id=principal.id,
            access_token=token,
            session=session,
            expires_in=self.tokens.validity_seconds,
        )
