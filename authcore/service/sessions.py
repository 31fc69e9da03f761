from __future__ import annotations

from datetime import timedelta
from typing import List, Mapping, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.storage.models import Session

logger = get_logger(__name__)

UNKNOWN_DEVICE = "Unknown"


class SessionStore(Protocol):
    def save_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now) -> Optional[Session]: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def deactivate_principal_sessions(
        self, principal_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_sessions(
        self, principal_id: str, *, active_only: bool = False, now=None
    ) -> List[Session]: ...

    def delete_invalid_sessions(self, now) -> int: ...


def classify_device(user_agent: Optional[str]) -> str:
    """Coarse device label from a user-agent string, Mobile taking priority over Tablet."""
    if user_agent is None:
        return UNKNOWN_DEVICE
    if any(marker in user_agent for marker in ("Mobile", "Android", "iPhone")):
        return "Mobile"
    if any(marker in user_agent for marker in ("Tablet", "iPad")):
        return "Tablet"
    return "Desktop"


def client_ip_from_headers(
    headers: Mapping[str, str], peer_address: Optional[str]
) -> Optional[str]:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer_address


class SessionRegistry:
    """Session lifecycle: create, touch, terminate and sweep.

    ``expires_at`` is fixed when the session is created; activity only moves
    ``last_active_at``.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        ttl_hours: int = 24,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock or SystemClock()

    def create(
        self,
        principal_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            principal_id,
            now=self.clock.now(),
            ttl=self.ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info or classify_device(user_agent),
        )
        saved = self.store.save_session(session)
        logger.info(
            "session_created",
            session_id=saved.id,
            principal_id=principal_id,
            ip_address=ip_address,
            device_info=saved.device_info,
        )
        return saved

    def touch(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        return self.store.touch_session(session_id, self.clock.now())

    def terminate(self, session_id: str) -> bool:
        found = self.store.deactivate_session(session_id)
        if found:
            logger.info("session_terminated", session_id=session_id)
        return found

    def terminate_all(self, principal_id: str) -> int:
        count = self.store.deactivate_principal_sessions(principal_id)
        logger.info("sessions_terminated", principal_id=principal_id, count=count)
        return count

    def terminate_all_except(self, principal_id: str, keep_session_id: str) -> int:
        count = self.store.deactivate_principal_sessions(
            principal_id, except_session_id=keep_session_id
        )
        logger.info(
            "sessions_terminated",
            principal_id=principal_id,
            kept_session_id=keep_session_id,
            count=count,
        )
        return count

    def sweep_expired(self) -> int:
        removed = self.store.delete_invalid_sessions(self.clock.now())
        logger.info("sessions_swept", removed=removed)
        return removed

    def find_by_id(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def find_active_by_principal(self, principal_id: str) -> List[Session]:
        return self.store.list_sessions(
            principal_id, active_only=True, now=self.clock.now()
        )

    def find_all_by_principal(self, principal_id: str) -> List[Session]:
        return self.store.list_sessions(principal_id)

    def is_valid(self, session: Optional[Session]) -> bool:
        return session is not None and session.is_valid(self.clock.now())
