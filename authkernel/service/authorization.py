from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from authkernel.logging import get_logger
from authkernel.service.errors import (
    AuthenticationError,
    InsufficientPermissionsError,
    InvalidTokenError,
    MissingTokenError,
    TokenExpiredError,
    TokenInvalidError,
)
from authkernel.service.tokens import TokenAuthority, extract_bearer_token

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """The authenticated caller as seen by request handlers."""

    user_id: str
    email: str
    username: str
    roles: List[str] = field(default_factory=list)
    token_id: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return any(role in self.roles for role in roles)


class AuthorizationGate:
    """Turns an ``Authorization`` header into an ``AuthContext`` and checks roles.

    Only the access token is consulted; the store is never touched, so a
    deactivated user keeps access until the token expires.
    """

    def __init__(self, tokens: TokenAuthority) -> None:
        self.tokens = tokens

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        if authorization is None or not authorization.strip():
            raise MissingTokenError()
        token = extract_bearer_token(authorization)
        try:
            claims = self.tokens.validate_access(token)
        except (TokenInvalidError, TokenExpiredError) as exc:
            logger.info("access_token_rejected", reason=exc.message)
            raise InvalidTokenError() from exc
        return AuthContext(
            user_id=claims.user_id,
            email=claims.email,
            username=claims.username,
            roles=list(claims.roles),
            token_id=claims.token_id,
        )

    def authenticate_optional(self, authorization: Optional[str]) -> Optional[AuthContext]:
        if not authorization:
            return None
        try:
            return self.authenticate(authorization)
        except AuthenticationError as exc:
            logger.debug("optional_auth_ignored", error_code=exc.error_code)
            return None

    @staticmethod
    def require_role(ctx: AuthContext, role: str) -> None:
        if not ctx.has_role(role):
            raise InsufficientPermissionsError()

    @staticmethod
    def require_any_role(ctx: AuthContext, roles: Iterable[str]) -> None:
        if not ctx.has_any_role(roles):
            raise InsufficientPermissionsError()
