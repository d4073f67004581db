from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from authkernel.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    RoleListResponse,
    RoleResponse,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    UserListResponse,
    UserResponse,
    VerifyRequest,
    VerifyResponse,
)
from authkernel.logging import get_logger
from authkernel.service.auth import AuthResult, ClientContext
from authkernel.service.authorization import AuthContext
from authkernel.service.errors import RateLimitedError
from authkernel.service.runtime import check_rate_limit, get_runtime
from authkernel.service.validation import normalize_email
from authkernel.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")

RATE_LIMIT_WINDOW_SECONDS = 60


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise 429 once ``key`` has spent its allowance for the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", key_prefix=key.split(":", 1)[0])
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": reset_seconds}
        )


async def _bounded(runtime, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
    """Run a service call under the configured request timeout."""
    try:
        return await asyncio.wait_for(
            func(*args, **kwargs), runtime.settings.request_timeout_seconds
        )
    except asyncio.TimeoutError:
        logger.error("request_timeout", operation=getattr(func, "__name__", "call"))
        raise _http_error("server_error", "request timed out", status_code=504)


def _client_context(request: Request) -> ClientContext:
    forwarded = request.headers.get("X-Forwarded-For")
    ip_address = None
    if forwarded:
        ip_address = forwarded.split(",")[0].strip() or None
    if ip_address is None and request.client is not None:
        ip_address = request.client.host
    return ClientContext(
        ip_address=ip_address,
        user_agent=request.headers.get("User-Agent"),
    )


def _user_response(user: User, roles: Optional[list[str]] = None) -> UserResponse:
    return UserResponse(**user.to_public(roles))


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(id=role.id, name=role.name, description=role.description)


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        session_id=result.session_id,
        user=UserResponse(**result.user),
    )


# -- dependencies -------------------------------------------------------------


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().gate.authenticate(authorization)


async def get_optional_principal(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    return get_runtime().gate.authenticate_optional(authorization)


def require_roles(*roles: str) -> Callable[..., Awaitable[AuthContext]]:
    """Dependency factory: the caller must hold at least one of ``roles``."""

    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        get_runtime().gate.require_any_role(principal, roles)
        return principal

    return _dependency


get_admin_user = require_roles("admin")


# -- auth ---------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and open its first session.

    Raises:
        403: registration disabled
        409: email or username already taken
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    if not runtime.settings.allow_registration:
        raise _http_error("forbidden", "registration disabled", status_code=403)
    await _enforce_rate_limit(
        runtime,
        f"register:{normalize_email(body.email)}",
        runtime.settings.register_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    result = await _bounded(
        runtime,
        runtime.auth.register,
        body.email,
        body.username,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        client=_client_context(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for an access token and a refresh token.

    Raises:
        401: invalid credentials
        403: account inactive
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{normalize_email(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    result = await _bounded(
        runtime,
        runtime.auth.login,
        body.email,
        body.password,
        client=_client_context(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    result = await _bounded(runtime, runtime.auth.refresh_token, body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=result.access_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    principal: Optional[AuthContext] = Depends(get_optional_principal),
):
    """Revoke the session behind a refresh token. Unknown tokens succeed silently."""
    runtime = get_runtime()
    await _bounded(runtime, runtime.auth.logout, body.refresh_token)
    if principal:
        logger.info("logout_requested", user_id=principal.user_id)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    removed = await _bounded(runtime, runtime.auth.logout_all, principal.user_id)
    return Envelope(status="ok", data=LogoutAllResponse(sessions_revoked=removed))


@router.post("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(body: VerifyRequest):
    runtime = get_runtime()
    claims = await runtime.auth.verify_token(body.token)
    return Envelope(
        status="ok",
        data=VerifyResponse(
            user_id=claims.user_id,
            email=claims.email,
            username=claims.username,
            roles=claims.roles,
            expires_at=claims.expires_at_datetime,
        ),
    )


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    """Replace the caller's password; every existing session is ended."""
    runtime = get_runtime()
    await _bounded(
        runtime,
        runtime.auth.change_password,
        principal.user_id,
        body.current_password,
        body.new_password,
    )
    return Envelope(status="ok", data={"message": "password changed"})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[SessionResponse(**s.to_public()) for s in sessions]
        ),
    )


# -- users --------------------------------------------------------------------


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = await runtime.users.get_profile(principal.user_id)
    roles = [r.name for r in await runtime.users.get_user_roles(user.id)]
    return Envelope(status="ok", data=_user_response(user, roles))


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    user = await runtime.users.update_profile(
        principal.user_id,
        first_name=body.first_name,
        last_name=body.last_name,
        username=body.username,
    )
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def delete_me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.users.delete_account(principal.user_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": principal.user_id})


@router.get("/users/me/roles", response_model=Envelope, tags=["users"])
async def get_my_roles(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    roles = await runtime.users.get_user_roles(principal.user_id)
    return Envelope(
        status="ok", data=RoleListResponse(items=[_role_response(r) for r in roles])
    )


# -- admin --------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    page: int = Query(1),
    page_size: int = Query(20),
    principal: AuthContext = Depends(require_roles("admin", "moderator")),
):
    runtime = get_runtime()
    result = await runtime.users.list_users(page, page_size)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[_user_response(u) for u in result.users],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
        ),
    )


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.users.get_user(user_id)
    roles = [r.name for r in await runtime.users.get_user_roles(user_id)]
    return Envelope(status="ok", data=_user_response(user, roles))


@router.post("/admin/users/{user_id}/activate", response_model=Envelope, tags=["admin"])
async def admin_activate_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.users.activate_user(user_id)
    logger.info("admin_user_activated", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    if user_id == principal.user_id:
        raise _http_error("validation_error", "cannot deactivate your own account", status_code=400)
    runtime = get_runtime()
    user = await runtime.users.deactivate_user(user_id)
    logger.info("admin_user_deactivated", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.post(
    "/admin/users/{user_id}/roles/{role_id}", response_model=Envelope, tags=["admin"]
)
async def admin_assign_role(
    user_id: str = Path(..., max_length=64),
    role_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    role = await runtime.users.assign_role(user_id, role_id)
    return Envelope(status="ok", data=_role_response(role))


@router.delete(
    "/admin/users/{user_id}/roles/{role_id}", response_model=Envelope, tags=["admin"]
)
async def admin_remove_role(
    user_id: str = Path(..., max_length=64),
    role_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    removed = await runtime.users.remove_role(user_id, role_id)
    return Envelope(status="ok", data={"removed": removed})


@router.get("/admin/roles", response_model=Envelope, tags=["admin"])
async def admin_list_roles(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    roles = await runtime.users.list_roles()
    return Envelope(
        status="ok", data=RoleListResponse(items=[_role_response(r) for r in roles])
    )


__all__ = [
    "router",
    "get_principal",
    "get_optional_principal",
    "require_roles",
    "get_admin_user",
]