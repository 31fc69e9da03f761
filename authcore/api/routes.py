from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from authcore.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    SessionListResponse,
    SessionResponse,
    TerminateSessionsResponse,
    TwoFactorConfirmRequest,
    TwoFactorDisableRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from authcore.logging import get_logger
from authcore.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    TwoFactorInvalidError,
    ValidationError,
)
from authcore.service.login import LoginOutcome, LoginResult
from authcore.service.runtime import get_runtime
from authcore.service.sessions import client_ip_from_headers
from authcore.service.tokens import extract_bearer
from authcore.storage.models import Session

logger = get_logger(__name__)

router = APIRouter()


@dataclass(frozen=True)
class AuthContext:
    principal_id: str
    session_id: Optional[str] = None


def client_ip(request: Request) -> Optional[str]:
    peer = request.client.host if request.client else None
    return client_ip_from_headers(request.headers, peer)


def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    token = extract_bearer(authorization)
    claims = runtime.tokens.authenticate(token) if token else None
    if claims is None:
        raise AuthenticationError("invalid or expired token")
    session_id = getattr(request.state, "session_id", None) or claims.session_id
    if claims.session_id:
        session = runtime.sessions.find_by_id(claims.session_id)
        # A terminated or expired session revokes the tokens bound to it
        if not runtime.sessions.is_valid(session) or session.principal_id != claims.subject:
            raise AuthenticationError("session is no longer active")
    return AuthContext(principal_id=claims.subject, session_id=session_id)


def _login_envelope(result: LoginResult) -> Envelope:
    if result.outcome == LoginOutcome.LOCKED:
        raise AccountLockedError(retry_after_seconds=result.retry_after_seconds)
    if result.outcome == LoginOutcome.TWO_FACTOR_INVALID:
        raise TwoFactorInvalidError("invalid two-factor code")
    if result.outcome == LoginOutcome.INVALID_CREDENTIALS:
        raise AuthenticationError("invalid credentials")
    if result.outcome == LoginOutcome.TWO_FACTOR_REQUIRED:
        data = LoginResponse(
            principal_id=result.principal_id,
            two_factor_required=True,
            two_factor_token=result.two_factor_token,
            expires_in=result.expires_in,
        )
        return Envelope(status="ok", data=data.model_dump(mode="json"))
    session = result.session
    data = LoginResponse(
        principal_id=result.principal_id,
        access_token=result.access_token,
        token_type="bearer",
        expires_in=result.expires_in,
        session_id=session.id if session else None,
        session_expires_at=session.expires_at if session else None,
    )
    return Envelope(status="ok", data=data.model_dump(mode="json"))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns an access token, or a short-lived two-factor token when the
    principal has two-factor enabled.

    Raises:
        401: invalid credentials
        403: account locked
    """
    runtime = get_runtime()
    result = runtime.login.login(
        body.email,
        body.password,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _login_envelope(result)


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
def verify_two_factor_login(body: TwoFactorLoginRequest, request: Request):
    """Second login step: exchange the two-factor token and a code for an access token."""
    runtime = get_runtime()
    result = runtime.login.complete_two_factor(
        body.two_factor_token,
        body.code,
        is_backup_code=body.is_backup_code,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _login_envelope(result)


def _session_response(session: Session, current_id: Optional[str]) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        device_info=session.device_info,
        created_at=session.created_at,
        last_active_at=session.last_active_at,
        expires_at=session.expires_at,
        active=session.active,
        current=session.id == current_id,
    )


def _owned_session(principal: AuthContext, session_id: str) -> Session:
    session = get_runtime().sessions.find_by_id(session_id)
    # Another principal's session is reported as missing
    if session is None or session.principal_id != principal.principal_id:
        raise NotFoundError("session not found", detail={"session_id": session_id})
    return session


@router.get("/users/sessions", response_model=Envelope, tags=["sessions"])
def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = runtime.sessions.find_active_by_principal(principal.principal_id)
    items = [_session_response(s, principal.session_id) for s in sessions]
    return Envelope(
        status="ok", data=SessionListResponse(items=items).model_dump(mode="json")
    )


@router.delete("/users/sessions/others", response_model=Envelope, tags=["sessions"])
def terminate_other_sessions(principal: AuthContext = Depends(get_principal)):
    if not principal.session_id:
        raise BadRequestError(
            "current session id is missing", detail={"reason": "session_id_missing"}
        )
    runtime = get_runtime()
    count = runtime.sessions.terminate_all_except(
        principal.principal_id, principal.session_id
    )
    return Envelope(
        status="ok", data=TerminateSessionsResponse(terminated=count).model_dump()
    )


@router.get("/users/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
def get_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_principal),
):
    session = _owned_session(principal, session_id)
    return Envelope(
        status="ok",
        data=_session_response(session, principal.session_id).model_dump(mode="json"),
    )


@router.delete("/users/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
def terminate_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_principal),
):
    _owned_session(principal, session_id)
    terminated = get_runtime().sessions.terminate(session_id)
    return Envelope(
        status="ok",
        data=TerminateSessionsResponse(terminated=1 if terminated else 0).model_dump(),
    )


@router.get("/users/2fa", response_model=Envelope, tags=["two-factor"])
def two_factor_status(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    profile = runtime.store.get_two_factor(principal.principal_id)
    status = TwoFactorStatusResponse(
        enabled=runtime.two_factor.is_enabled(principal.principal_id),
        state=profile.state.value if profile else "unset",
    )
    return Envelope(status="ok", data=status.model_dump())


@router.post("/users/2fa/setup", response_model=Envelope, tags=["two-factor"])
def begin_two_factor_setup(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.store.get_principal(principal.principal_id)
    label = account.email if account else principal.principal_id
    enrollment = runtime.two_factor.begin_enrollment(principal.principal_id, label)
    data = TwoFactorSetupResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        backup_codes=enrollment.backup_codes,
    )
    return Envelope(status="ok", data=data.model_dump())


@router.post("/users/2fa/confirm", response_model=Envelope, tags=["two-factor"])
def confirm_two_factor_setup(
    body: TwoFactorConfirmRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    if not runtime.two_factor.confirm_enrollment(
        principal.principal_id, body.secret, body.code
    ):
        raise TwoFactorInvalidError("invalid two-factor code")
    return Envelope(status="ok", data={"enabled": True})


@router.post("/users/2fa/disable", response_model=Envelope, tags=["two-factor"])
def disable_two_factor(
    body: TwoFactorDisableRequest, principal: AuthContext = Depends(get_principal)
):
    """Turn two-factor off. Requires a current TOTP or backup code."""
    runtime = get_runtime()
    if not runtime.two_factor.is_enabled(principal.principal_id):
        raise ValidationError("two-factor is not enabled")
    if not runtime.two_factor.verify(
        principal.principal_id, body.code, body.is_backup_code
    ):
        raise TwoFactorInvalidError("invalid two-factor code")
    runtime.two_factor.disable(principal.principal_id)
    return Envelope(status="ok", data={"enabled": False})
