from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from fanauth.logging import get_logger
from fanauth.service.errors import ExpiredTokenError, InvalidTokenError
from fanauth.storage.models import User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    session_id: str
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime
    email: Optional[str] = None
    username: Optional[str] = None
    tier: Optional[str] = None
    role: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


class TokenIssuer:
    """Signs and verifies HS256 access and refresh tokens.

    Only the ``HS256`` header is accepted. Issuer and audience are pinned to
    the configured values. ``verify`` raises ``ExpiredTokenError`` only when a
    token is otherwise valid and past ``exp``, so callers can tell "refresh"
    apart from "log in again".
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        leeway_seconds: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway_seconds
        self._clock = clock or utcnow

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _base_claims(
        self, subject: str, session_id: str, token_type: str, ttl: timedelta
    ) -> tuple[dict[str, Any], str, datetime]:
        now = self._clock()
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        claims = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "sid": session_id,
            "type": token_type,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return claims, jti, expires_at

    def issue_access_token(self, user: User, session_id: str) -> IssuedToken:
        claims, jti, expires_at = self._base_claims(
            user.id, session_id, ACCESS, self.access_ttl
        )
        claims.update(
            {
                "email": user.email,
                "username": user.username,
                "tier": user.tier.value,
                "role": user.role.value,
            }
        )
        return IssuedToken(self._encode(claims), jti, expires_at)

    def issue_refresh_token(self, session_id: str, user_id: str) -> IssuedToken:
        claims, jti, expires_at = self._base_claims(
            user_id, session_id, REFRESH, self.refresh_ttl
        )
        return IssuedToken(self._encode(claims), jti, expires_at)

    def verify(self, token: str, *, expected_type: Optional[str] = None) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError()
        token_type = payload.get("type")
        if token_type not in (ACCESS, REFRESH):
            raise InvalidTokenError()
        if expected_type is not None and token_type != expected_type:
            raise InvalidTokenError(f"Expected a {expected_type} token")
        if not payload.get("sub") or not payload.get("sid") or not payload.get("jti"):
            raise InvalidTokenError()
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError() from None

        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self.leeway:
            raise ExpiredTokenError()

        return TokenClaims(
            subject=str(payload["sub"]),
            session_id=str(payload["sid"]),
            token_type=token_type,
            jti=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            email=payload.get("email"),
            username=payload.get("username"),
            tier=payload.get("tier"),
            role=payload.get("role"),
            raw=payload,
        )


__all__ = ["ACCESS", "REFRESH", "IssuedToken", "TokenClaims", "TokenIssuer"]
