from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

from authkernel.logging import get_logger
from authkernel.service.errors import (
    InvalidTokenFormatError,
    TokenExpiredError,
    TokenInvalidError,
)

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
BEARER_PREFIX = "Bearer "


@dataclass
class AccessTokenClaims:
    user_id: str
    email: str
    username: str
    roles: List[str]
    issuer: str
    audience: List[str]
    subject: str
    issued_at: int
    not_before: int
    expires_at: int
    token_id: str

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass
class RefreshTokenClaims:
    user_id: str
    issuer: str
    audience: List[str]
    subject: str
    issued_at: int
    not_before: int
    expires_at: int
    token_id: str


@dataclass
class _Clock:
    """Indirection over ``time.time`` so tests can pin the current instant."""

    offset: float = 0.0
    frozen: Optional[float] = field(default=None)

    def now(self) -> float:
        if self.frozen is not None:
            return self.frozen
        return time.time() + self.offset


class TokenAuthority:
    """Mints and validates HS256 JWTs.

    Access and refresh tokens are signed with separate secrets so a token of
    one kind never validates as the other, even before the ``token_type``
    claim is checked. Only ``HS256`` headers are accepted.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must be non-empty")
        self._access_key = access_secret.encode()
        self._refresh_key = refresh_secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = max(0, int(leeway_seconds))
        self.clock = _Clock()

    # -- encoding -----------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key: bytes, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(key, signing_input)}"

    def _decode_jwt(self, token: str, key: bytes, token_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("unexpected signing method")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(key, signing_input).encode(), sig_b64.encode()):
            raise TokenInvalidError("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token payload")
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token payload")

        if payload.get("token_type") != token_type:
            raise TokenInvalidError("wrong token type")
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError("wrong issuer")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalidError("wrong audience")

        exp = self._numeric_claim(payload, "exp")
        nbf = self._numeric_claim(payload, "nbf")
        now = self.clock.now()
        if nbf > now + self.leeway_seconds:
            raise TokenInvalidError("token not yet valid")
        # Expired once now reaches exp; leeway only tolerates skew
        if now >= exp + self.leeway_seconds:
            raise TokenExpiredError()
        for claim in ("sub", "jti", "iat"):
            if claim not in payload:
                raise TokenInvalidError(f"missing {claim} claim")
        return payload

    @staticmethod
    def _numeric_claim(payload: dict[str, Any], claim: str) -> float:
        value = payload.get(claim)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TokenInvalidError(f"missing {claim} claim")
        return float(value)

    def _registered_claims(self, user_id: str, ttl_seconds: int, token_type: str) -> dict:
        if ttl_seconds <= 0:
            raise ValueError("token ttl must be positive")
        now = int(self.clock.now())
        return {
            "iss": self.issuer,
            "aud": [self.audience],
            "sub": user_id,
            "iat": now,
            "nbf": now,
            "exp": now + int(ttl_seconds),
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }

    # -- public API ---------------------------------------------------------

    def issue_access(
        self,
        user_id: str,
        email: str,
        username: str,
        roles: List[str],
        ttl_seconds: int,
    ) -> str:
        payload = self._registered_claims(user_id, ttl_seconds, ACCESS_TOKEN_TYPE)
        payload.update(
            {
                "user_id": user_id,
                "email": email,
                "username": username,
                "roles": list(roles),
            }
        )
        return self._encode_jwt(payload, self._access_key)

    def issue_refresh(self, user_id: str, ttl_seconds: int) -> str:
        payload = self._registered_claims(user_id, ttl_seconds, REFRESH_TOKEN_TYPE)
        payload["user_id"] = user_id
        return self._encode_jwt(payload, self._refresh_key)

    def validate_access(self, token: str) -> AccessTokenClaims:
        payload = self._decode_jwt(token, self._access_key, ACCESS_TOKEN_TYPE)
        roles = payload.get("roles")
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise TokenInvalidError("malformed roles claim")
        for claim in ("user_id", "email", "username"):
            if not isinstance(payload.get(claim), str):
                raise TokenInvalidError(f"missing {claim} claim")
        aud = payload["aud"]
        return AccessTokenClaims(
            user_id=payload["user_id"],
            email=payload["email"],
            username=payload["username"],
            roles=roles,
            issuer=payload["iss"],
            audience=aud if isinstance(aud, list) else [aud],
            subject=payload["sub"],
            issued_at=int(payload["iat"]),
            not_before=int(payload["nbf"]),
            expires_at=int(payload["exp"]),
            token_id=payload["jti"],
        )

    def validate_refresh(self, token: str) -> RefreshTokenClaims:
        payload = self._decode_jwt(token, self._refresh_key, REFRESH_TOKEN_TYPE)
        aud = payload["aud"]
        return RefreshTokenClaims(
            user_id=payload.get("user_id") or payload["sub"],
            issuer=payload["iss"],
            audience=aud if isinstance(aud, list) else [aud],
            subject=payload["sub"],
            issued_at=int(payload["iat"]),
            not_before=int(payload["nbf"]),
            expires_at=int(payload["exp"]),
            token_id=payload["jti"],
        )

    def token_expiration(self, token: str) -> datetime:
        return self.validate_access(token).expires_at_datetime

    @staticmethod
    def generate_refresh_token() -> str:
        """Opaque refresh token: 32 random bytes, hex encoded."""
        return secrets.token_hex(32)


def extract_bearer_token(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` value.

    The scheme is case-sensitive and must be followed by exactly one space.
    """
    if not header or not header.startswith(BEARER_PREFIX):
        raise InvalidTokenFormatError()
    token = header[len(BEARER_PREFIX):]
    if not token or any(char.isspace() for char in token):
        raise InvalidTokenFormatError()
    return token
