from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and the HTTP ``status_code``
    the transport layer answers with. Generic codes:

    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)

    Subclasses narrow these into the auth-specific codes below.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakPasswordError(ValidationError):
    error_code = "weak_password"

    def __init__(self, message: str = "Password does not meet security requirements", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MissingTokenError(AuthenticationError):
    error_code = "missing_token"

    def __init__(self, message: str = "Authorization header required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenFormatError(AuthenticationError):
    error_code = "invalid_token_format"

    def __init__(
        self, message: str = "Authorization header must be 'Bearer <token>'", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class UserInactiveError(ForbiddenError):
    error_code = "user_inactive"

    def __init__(self, message: str = "User account is inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotVerifiedError(ForbiddenError):
    error_code = "user_not_verified"

    def __init__(self, message: str = "User account is not verified", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InsufficientPermissionsError(ForbiddenError):
    error_code = "insufficient_permissions"

    def __init__(self, message: str = "Insufficient permissions", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"

    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RoleNotFoundError(NotFoundError):
    error_code = "role_not_found"

    def __init__(self, message: str = "Role not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailExistsError(ConflictError):
    error_code = "email_exists"

    def __init__(self, message: str = "Email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UsernameExistsError(ConflictError):
    error_code = "username_exists"

    def __init__(self, message: str = "Username already taken", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DatabaseError(ServerError):
    """A store operation failed; the cause is logged, never returned to clients."""
    error_code = "database_error"

    def __init__(
        self,
        message: str = "database operation failed",
        *,
        cause: Optional[BaseException] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.cause = cause


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "TokenExpiredError",
    "MissingTokenError",
    "InvalidTokenFormatError",
    "InvalidTokenError",
    "ForbiddenError",
    "UserInactiveError",
    "UserNotVerifiedError",
    "InsufficientPermissionsError",
    "NotFoundError",
    "UserNotFoundError",
    "RoleNotFoundError",
    "ConflictError",
    "EmailExistsError",
    "UsernameExistsError",
    "RateLimitedError",
    "ServerError",
    "DatabaseError",
]
