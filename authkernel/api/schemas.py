from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "weak_password",
    "unauthorized",
    "invalid_credentials",
    "token_invalid",
    "token_expired",
    "missing_token",
    "invalid_token_format",
    "invalid_token",
    "forbidden",
    "user_inactive",
    "user_not_verified",
    "insufficient_permissions",
    "not_found",
    "user_not_found",
    "role_not_found",
    "conflict",
    "email_exists",
    "username_exists",
    "rate_limited",
    "server_error",
    "database_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Field formats (email syntax, username charset, password strength) are checked
# by the service so clients get its specific error codes; these models only
# bound sizes.


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(default="", max_length=2048)


class VerifyRequest(BaseModel):
    token: str = Field(..., max_length=8192)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    username: Optional[str] = Field(default=None, max_length=64)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    roles: Optional[List[str]] = None


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    session_id: Optional[str] = None
    user: UserResponse


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class VerifyResponse(BaseModel):
    valid: bool = True
    user_id: str
    email: str
    username: str
    roles: List[str]
    expires_at: datetime


class SessionResponse(BaseModel):
    id: str
    user_agent: str
    ip_address: str
    is_active: bool
    created_at: datetime
    expires_at: datetime


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None


class RoleListResponse(BaseModel):
    items: List[RoleResponse]


class UserListResponse(BaseModel):
    items: List[UserResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class LogoutAllResponse(BaseModel):
    sessions_revoked: int
