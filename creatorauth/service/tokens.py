from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from creatorauth.config import Settings
from creatorauth.logging import get_logger
from creatorauth.service.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    TokenExpiredError,
)
from creatorauth.storage.models import utcnow

logger = get_logger(__name__)

# 64 random bytes -> 128 hex chars (512 bits)
REFRESH_TOKEN_BYTES = 64


def hash_token(token: str) -> str:
    """One-way digest used wherever a token has to be persisted or compared."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_opaque_secret(nbytes: int = REFRESH_TOKEN_BYTES) -> str:
    return secrets.token_hex(nbytes)


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    email: str
    role: str
    session_id: str
    iat: float
    exp: int
    jti: str

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


class TokenCodec:
    """HS256 access tokens and opaque refresh secrets.

    ``iat`` is kept with sub-second precision so a token minted right after a
    bulk revocation is never mistaken for one minted before it.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._now = now or utcnow
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def sign(self, *, user_id: str, email: str, role: str, session_id: str) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "email": email,
            "role": role,
            "sessionId": session_id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": round(now.timestamp(), 6),
            "exp": int((now + self.access_ttl).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def _split(self, token: str) -> tuple[str, str, str]:
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3:
            raise InvalidTokenError("malformed token")
        return parts[0], parts[1], parts[2]

    def decode_unverified(self, token: str) -> dict[str, Any]:
        """Read the payload without checking the signature.

        Only for bookkeeping such as the blacklist expiry or log attribution;
        never for an authorization decision.
        """
        _, payload_b64, _ = self._split(token)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidTokenError("malformed token payload") from exc
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token payload")
        return payload

    def expiry_of(self, token: str) -> datetime:
        exp = self.decode_unverified(token).get("exp")
        if exp is None or isinstance(exp, bool):
            raise InvalidTokenError("token has no expiry claim")
        try:
            return datetime.fromtimestamp(float(exp), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise InvalidTokenError("token expiry claim is not a timestamp") from exc

    def verify(self, token: str) -> AccessClaims:
        try:
            header_b64, payload_b64, sig_b64 = self._split(token)
        except InvalidTokenError as exc:
            raise InvalidSignatureError("invalid access token") from exc

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise InvalidSignatureError("invalid access token") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignatureError("invalid access token")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError("invalid access token")

        try:
            payload = self.decode_unverified(token)
        except InvalidTokenError as exc:
            raise InvalidSignatureError("invalid access token") from exc
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidSignatureError("invalid access token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("token_type") != "access":
            raise InvalidSignatureError("invalid access token")

        try:
            exp = int(payload["exp"])
            iat = float(payload["iat"])
            claims = AccessClaims(
                sub=str(payload["sub"]),
                email=str(payload.get("email") or ""),
                role=str(payload.get("role") or "user"),
                session_id=str(payload.get("sessionId") or ""),
                iat=iat,
                exp=exp,
                jti=str(payload.get("jti") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidSignatureError("invalid access token") from exc

        if exp <= self._now().timestamp():
            raise TokenExpiredError("access token expired")
        return claims
