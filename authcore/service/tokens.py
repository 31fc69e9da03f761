from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock, epoch_seconds
from authcore.storage.models import TokenClaims

logger = get_logger(__name__)

TWO_FACTOR_TOKEN_TYPE = "2fa_temp"
ACCESS_TOKEN_TYPE = "access"

_RESERVED_CLAIMS = frozenset({"sub", "iat", "exp", "iss", "aud", "jti"})


class TokenParseError(Exception):
    """Raised when a token is malformed or its signature does not match."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def select_stale_entries(
    snapshot: Mapping[str, Mapping[str, int]],
    now_ts: int,
    is_parsable: Callable[[str], bool],
) -> List[Tuple[str, str]]:
    """Return ``(subject, token)`` pairs whose token expired or no longer parses."""

    stale: List[Tuple[str, str]] = []
    for subject, entries in snapshot.items():
        for token, exp in entries.items():
            if exp <= now_ts or not is_parsable(token):
                stale.append((subject, token))
    return stale


class VerificationCache:
    """Bounded per-subject cache of successfully verified tokens.

    Maps subject -> {token: exp}. Only valid results are ever stored. When a
    subject is at capacity an arbitrary existing entry is evicted, not the
    least recently used one. Access is guarded by striped locks keyed on the
    subject.
    """

    def __init__(self, max_per_subject: int = 5, *, stripes: int = 64) -> None:
        if max_per_subject <= 0:
            raise ValueError("max_per_subject must be positive")
        self.max_per_subject = max_per_subject
        self._entries: Dict[str, Dict[str, int]] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, subject: str) -> threading.Lock:
        return self._locks[hash(subject) % len(self._locks)]

    def get(self, subject: str, token: str) -> Optional[int]:
        with self._lock_for(subject):
            entries = self._entries.get(subject)
            return entries.get(token) if entries else None

    def put(self, subject: str, token: str, exp: int) -> None:
        with self._lock_for(subject):
            entries = self._entries.setdefault(subject, {})
            if token not in entries and len(entries) >= self.max_per_subject:
                evicted = next(iter(entries))
                del entries[evicted]
            entries[token] = exp

    def discard(self, subject: str, token: str) -> None:
        with self._lock_for(subject):
            entries = self._entries.get(subject)
            if entries is None:
                return
            entries.pop(token, None)
            if not entries:
                del self._entries[subject]

    def discard_if_unchanged(self, subject: str, token: str, exp: int) -> bool:
        with self._lock_for(subject):
            entries = self._entries.get(subject)
            if entries is None or entries.get(token) != exp:
                return False
            del entries[token]
            if not entries:
                del self._entries[subject]
            return True

    def drop_empty(self, subjects: Iterable[str]) -> None:
        for subject in subjects:
            with self._lock_for(subject):
                if subject in self._entries and not self._entries[subject]:
                    del self._entries[subject]

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        result: Dict[str, Dict[str, int]] = {}
        for subject in list(self._entries.keys()):
            with self._lock_for(subject):
                entries = self._entries.get(subject)
                if entries is not None:
                    result[subject] = dict(entries)
        return result

    def size(self, subject: Optional[str] = None) -> int:
        if subject is not None:
            with self._lock_for(subject):
                return len(self._entries.get(subject, {}))
        return sum(len(entries) for entries in self.snapshot().values())

    def subjects(self) -> List[str]:
        return list(self._entries.keys())

    def clear(self) -> None:
        for subject in list(self._entries.keys()):
            with self._lock_for(subject):
                self._entries.pop(subject, None)


class TokenAuthority:
    """Issues and verifies HS256 bearer tokens.

    Verification failures of any kind collapse to ``False``; the reason is only
    logged at debug level.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        validity_seconds: int = 3600,
        clock: Optional[Clock] = None,
        cache: Optional[VerificationCache] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.validity_seconds = validity_seconds
        self.clock = clock or SystemClock()
        self.cache = cache or VerificationCache()

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    @staticmethod
    def _split(token: str) -> Tuple[str, str, str]:
        if not token or not isinstance(token, str):
            raise TokenParseError("empty token")
        # Compact tokens are plain ASCII
        if not token.isascii():
            raise TokenParseError("token contains non-ascii characters")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenParseError("token must have three segments")
        return header_b64, payload_b64, sig_b64

    @staticmethod
    def _payload(payload_b64: str) -> dict[str, Any]:
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            raise TokenParseError("payload decode failed") from exc
        if not isinstance(payload, dict):
            raise TokenParseError("payload is not an object")
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise TokenParseError("missing subject")
        for name in ("exp", "iat"):
            value = payload.get(name, 0)
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise TokenParseError(f"invalid {name}")
        if "exp" not in payload:
            raise TokenParseError("missing expiry")
        return payload

    def _decode(self, token: str) -> dict[str, Any]:
        header_b64, payload_b64, sig_b64 = self._split(token)
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise TokenParseError("header decode failed") from exc
        # Only HS256 is accepted to rule out algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenParseError("unsupported algorithm")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenParseError("signature mismatch")
        return self._payload(payload_b64)

    def _peek(self, token: str) -> dict[str, Any]:
        """Payload without the signature check. Never trust it on its own."""
        _, payload_b64, _ = self._split(token)
        return self._payload(payload_b64)

    @staticmethod
    def _claims(payload: Mapping[str, Any]) -> TokenClaims:
        extra = {k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS}
        return TokenClaims(
            subject=payload["sub"],
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload["exp"]),
            session_id=payload.get("sid"),
            token_type=str(payload.get("type") or ACCESS_TOKEN_TYPE),
            claims=extra,
        )

    def issue(
        self,
        subject: str,
        claims: Optional[Mapping[str, Any]] = None,
        *,
        ttl_seconds: Optional[int] = None,
    ) -> str:
        if not subject:
            raise ValueError("subject is required")
        issued_at = epoch_seconds(self.clock.now())
        ttl = self.validity_seconds if ttl_seconds is None else ttl_seconds
        payload: dict[str, Any] = {
            key: value
            for key, value in (claims or {}).items()
            if key not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "sub": subject,
                "iat": issued_at,
                "exp": issued_at + ttl,
                "iss": self.issuer,
                "aud": self.audience,
                "jti": str(uuid.uuid4()),
            }
        )
        return self._encode(payload)

    def verify(self, token: str, expected_subject: str) -> bool:
        if not token or not expected_subject:
            return False
        now_ts = epoch_seconds(self.clock.now())

        cached_exp = self.cache.get(expected_subject, token)
        if cached_exp is not None:
            if cached_exp > now_ts:
                return True
            self.cache.discard(expected_subject, token)
            return False

        try:
            payload = self._decode(token)
        except TokenParseError as exc:
            logger.debug("token_rejected", reason=str(exc))
            return False
        if payload.get("iss") != self.issuer:
            logger.debug("token_rejected", reason="issuer mismatch")
            return False
        aud = payload.get("aud")
        valid_aud = aud == self.audience or (
            isinstance(aud, list) and self.audience in aud
        )
        if not valid_aud:
            logger.debug("token_rejected", reason="audience mismatch")
            return False
        exp = int(payload["exp"])
        if exp <= now_ts:
            logger.debug("token_rejected", reason="expired")
            return False
        if payload["sub"] != expected_subject:
            logger.debug("token_rejected", reason="subject mismatch")
            return False

        self.cache.put(expected_subject, token, exp)
        return True

    def parse(self, token: str) -> TokenClaims:
        """Decode a token with its signature checked but expiry ignored.

        A successful parse is not proof of validity; use ``verify`` for that.
        """
        return self._claims(self._decode(token))

    def extract_subject(self, token: str) -> str:
        return self.parse(token).subject

    def extract_claim(self, token: str, name: str) -> Any:
        return self._decode(token).get(name)

    def authenticate(self, token: str) -> Optional[TokenClaims]:
        """Resolve a bearer token to its claims when it is a valid access token.

        The claims are read unverified and only returned once ``verify`` accepts
        the same token string, so a cache hit costs no signature work.
        """
        try:
            claims = self._claims(self._peek(token))
        except TokenParseError:
            return None
        if claims.token_type != ACCESS_TOKEN_TYPE:
            return None
        if not self.verify(token, claims.subject):
            return None
        return claims

    def _parsable(self, token: str) -> bool:
        try:
            self._decode(token)
        except TokenParseError:
            return False
        return True

    def sweep_expired(self) -> int:
        snapshot = self.cache.snapshot()
        now_ts = epoch_seconds(self.clock.now())
        removed = 0
        for subject, token in select_stale_entries(snapshot, now_ts, self._parsable):
            # Entries refreshed since the snapshot are left for the next sweep
            if self.cache.discard_if_unchanged(subject, token, snapshot[subject][token]):
                removed += 1
        self.cache.drop_empty(snapshot.keys())
        logger.info(
            "token_cache_swept", removed=removed, subjects=len(self.cache.subjects())
        )
        return removed


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
