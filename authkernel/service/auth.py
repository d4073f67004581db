from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, List, Optional, Protocol, TypeVar

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service import events
from authkernel.service.errors import (
    DatabaseError,
    EmailExistsError,
    InvalidCredentialsError,
    ServerError,
    ServiceError,
    TokenExpiredError,
    TokenInvalidError,
    UserInactiveError,
    UserNotFoundError,
    UsernameExistsError,
)
from authkernel.service.events import EventPublisher, publish_best_effort
from authkernel.service.passwords import HashFormatError, KDFError, PasswordHasher
from authkernel.service.tokens import AccessTokenClaims, TokenAuthority
from authkernel.service.validation import (
    clean_name,
    is_valid_id,
    normalize_email,
    validate_email,
    validate_password,
    validate_username,
)
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import Role, Session, User, utcnow

logger = get_logger(__name__)

T = TypeVar("T")


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def list_active_sessions(self, user_id: str) -> List[Session]: ...

    def update_session(self, session: Session) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


class UserDirectory(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_user(self, user: User) -> Optional[User]: ...

    def update_last_login(self, user_id: str, at: datetime) -> bool: ...

    def update_password_hash(
        self, user_id: str, password_hash: str, *, expected_hash: Optional[str] = None
    ) -> bool: ...

    def delete_user(self, user_id: str) -> bool: ...

    def list_users(self, limit: int = 20, offset: int = 0) -> List[User]: ...

    def count_users(self) -> int: ...

    def email_exists(self, email: str) -> bool: ...

    def username_exists(self, username: str) -> bool: ...


class RoleDirectory(Protocol):
    def create_role(self, role: Role) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def update_role(self, role: Role) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def assign_role(self, user_id: str, role_id: str) -> None: ...

    def remove_role(self, user_id: str, role_id: str) -> bool: ...

    def get_user_roles(self, user_id: str) -> List[Role]: ...


class AuthStore(SessionStore, UserDirectory, RoleDirectory, Protocol):
    def transaction(self) -> ContextManager[Any]: ...


@dataclass
class ClientContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user: Dict[str, Any]
    roles: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    token_type: str = "Bearer"


@dataclass
class TokenResult:
    access_token: str
    expires_in: int
    token_type: str = "Bearer"


class AuthService:
    """Registration, login, refresh, logout and password changes.

    Store calls are synchronous; the KDF runs in a worker thread so hashing
    does not stall the event loop. Typed ``ServiceError`` subclasses are the
    only failures that escape: infrastructure errors from the store are
    logged and re-raised as ``DatabaseError``.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenAuthority,
        hasher: PasswordHasher,
        settings: Settings,
        *,
        publisher: Optional[EventPublisher] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.hasher = hasher
        self.settings = settings
        self.publisher = publisher
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    # -- helpers ------------------------------------------------------------

    def _call_store(self, operation: str, func: Callable[..., T], *args, **kwargs) -> T:
        try:
            return func(*args, **kwargs)
        except (ConstraintViolation, ServiceError):
            raise
        except Exception as exc:
            self.logger.error(
                "store_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DatabaseError(cause=exc) from exc

    async def _hash(self, password: str) -> str:
        try:
            return await asyncio.to_thread(self.hasher.hash, password)
        except KDFError as exc:
            raise ServerError("internal server error") from exc

    async def _verify(self, user: User, password: str) -> bool:
        try:
            return await asyncio.to_thread(self.hasher.verify, password, user.password_hash)
        except HashFormatError as exc:
            self.logger.error("stored_password_hash_invalid", user_id=user.id, error=str(exc))
            raise ServerError("internal server error") from exc

    async def _dummy_verify(self, password: str) -> None:
        """Spend one verification on a throwaway hash so unknown emails take as long as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                self.hasher.hash, secrets.token_urlsafe(16)
            )
        await asyncio.to_thread(self.hasher.verify, password, self._dummy_hash)

    async def _upgrade_hash(self, user: User, password: str) -> None:
        """Re-hash with current parameters, unless the stored hash changed meanwhile."""
        if not self.hasher.needs_rehash(user.password_hash):
            return
        try:
            new_hash = await self._hash(password)
            swapped = self.store.update_password_hash(
                user.id, new_hash, expected_hash=user.password_hash
            )
        except Exception as exc:
            self.logger.warning("password_rehash_failed", user_id=user.id, error=str(exc))
            return
        if swapped:
            user.password_hash = new_hash
        else:
            self.logger.info("password_rehash_skipped", user_id=user.id)

    def _role_names(self, user_id: str) -> List[str]:
        return [r.name for r in self._call_store("get_user_roles", self.store.get_user_roles, user_id)]

    def _role_names_or_empty(self, user_id: str) -> List[str]:
        try:
            return [r.name for r in self.store.get_user_roles(user_id)]
        except Exception as exc:
            self.logger.warning("role_lookup_failed", user_id=user_id, error=str(exc))
            return []

    def _assign_default_role(self, user_id: str) -> None:
        role_name = self.settings.default_role
        try:
            role = self.store.get_role_by_name(role_name)
            if role is None:
                self.logger.warning("default_role_missing", role=role_name)
                return
            self.store.assign_role(user_id, role.id)
        except Exception as exc:
            self.logger.warning(
                "default_role_assign_failed", user_id=user_id, role=role_name, error=str(exc)
            )

    def _start_session(
        self, user: User, roles: List[str], client: ClientContext
    ) -> AuthResult:
        access_ttl = self.settings.access_token_ttl_seconds
        access_token = self.tokens.issue_access(
            user.id, user.email, user.username, roles, access_ttl
        )
        session = Session.new(
            user_id=user.id,
            refresh_token=self.tokens.generate_refresh_token(),
            ttl_seconds=self.settings.refresh_token_ttl_seconds,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
        )
        try:
            stored = self.store.create_session(session)
        except Exception as exc:
            self.logger.error(
                "session_create_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DatabaseError(cause=exc) from exc
        return AuthResult(
            access_token=access_token,
            refresh_token=stored.refresh_token,
            expires_in=access_ttl,
            user=user.to_public(roles),
            roles=list(roles),
            session_id=stored.id,
        )

    @staticmethod
    def _conflict_for(exc: ConstraintViolation) -> ServiceError:
        if exc.field == "email":
            return EmailExistsError()
        if exc.field == "username":
            return UsernameExistsError()
        return DatabaseError(cause=exc)

    # -- operations ---------------------------------------------------------

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        client: Optional[ClientContext] = None,
    ) -> AuthResult:
        client = client or ClientContext()
        email = validate_email(email)
        username = validate_username(username)
        validate_password(password)
        first_name = clean_name(first_name, "first_name")
        last_name = clean_name(last_name, "last_name")

        if self._call_store("email_exists", self.store.email_exists, email):
            raise EmailExistsError()
        if self._call_store("username_exists", self.store.username_exists, username):
            raise UsernameExistsError()

        password_hash = await self._hash(password)
        user = User.new(
            email, username, password_hash, first_name=first_name, last_name=last_name
        )

        # User row and first session commit together or not at all
        try:
            with self.store.transaction():
                created = self.store.create_user(user)
                self._assign_default_role(created.id)
                roles = self._role_names_or_empty(created.id)
                result = self._start_session(created, roles, client)
        except ConstraintViolation as exc:
            raise self._conflict_for(exc) from exc
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error(
                "register_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise DatabaseError(cause=exc) from exc

        self.logger.info("user_registered", user_id=created.id)
        await publish_best_effort(self.publisher, events.user_registered(created))
        return result

    async def login(
        self,
        email: str,
        password: str,
        *,
        client: Optional[ClientContext] = None,
    ) -> AuthResult:
        client = client or ClientContext()
        normalized = normalize_email(email)
        try:
            user = self.store.get_user_by_email(normalized)
        except Exception as exc:
            self.logger.warning("login_lookup_failed", error=str(exc))
            user = None
        if user is None:
            await self._dummy_verify(password or "")
            raise InvalidCredentialsError()

        # Password first so inactive accounts are only revealed to their owner
        if not await self._verify(user, password or ""):
            self.logger.info("login_password_mismatch", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            raise UserInactiveError()

        # Only the columns login owns are written; the row may have changed during verify
        user.last_login_at = utcnow()
        try:
            self.store.update_last_login(user.id, user.last_login_at)
        except Exception as exc:
            self.logger.warning("last_login_update_failed", user_id=user.id, error=str(exc))
        await self._upgrade_hash(user, password)

        roles = self._role_names(user.id)
        result = self._start_session(user, roles, client)
        self.logger.info("user_logged_in", user_id=user.id, session_id=result.session_id)
        await publish_best_effort(
            self.publisher,
            events.user_logged_in(
                user,
                ip_address=client.ip_address or "",
                user_agent=client.user_agent or "",
            ),
        )
        return result

    async def refresh_token(self, refresh_token: str) -> TokenResult:
        if not refresh_token:
            raise TokenInvalidError("Invalid refresh token")
        session = self._call_store(
            "get_session_by_refresh_token",
            self.store.get_session_by_refresh_token,
            refresh_token,
        )
        if session is None:
            raise TokenInvalidError("Invalid refresh token")
        if not session.is_usable(utcnow()):
            raise TokenExpiredError("Refresh token has expired")

        user = self._call_store("get_user", self.store.get_user, session.user_id)
        if user is None:
            raise UserNotFoundError()
        if not user.is_active:
            raise UserInactiveError()

        roles = self._role_names_or_empty(user.id)
        access_ttl = self.settings.access_token_ttl_seconds
        access_token = self.tokens.issue_access(
            user.id, user.email, user.username, roles, access_ttl
        )
        return TokenResult(access_token=access_token, expires_in=access_ttl)

    async def logout(self, refresh_token: str) -> None:
        if not refresh_token:
            return
        session = self._call_store(
            "get_session_by_refresh_token",
            self.store.get_session_by_refresh_token,
            refresh_token,
        )
        if session is None:
            return
        self._call_store("delete_session", self.store.delete_session, session.id)

        email = None
        try:
            user = self.store.get_user(session.user_id)
            email = user.email if user else None
        except Exception as exc:
            self.logger.warning("logout_user_lookup_failed", user_id=session.user_id, error=str(exc))
        self.logger.info("user_logged_out", user_id=session.user_id, session_id=session.id)
        await publish_best_effort(
            self.publisher, events.user_logged_out(session.user_id, email, session.id)
        )

    async def logout_all(self, user_id: str) -> int:
        removed = self._call_store(
            "delete_user_sessions", self.store.delete_user_sessions, user_id
        )
        self.logger.info("user_sessions_revoked", user_id=user_id, count=removed)
        return removed

    async def verify_token(self, token: str) -> AccessTokenClaims:
        try:
            return self.tokens.validate_access(token)
        except (TokenInvalidError, TokenExpiredError) as exc:
            raise TokenInvalidError() from exc

    async def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> None:
        if not is_valid_id(user_id):
            raise UserNotFoundError()
        user = self._call_store("get_user", self.store.get_user, user_id)
        if user is None:
            raise UserNotFoundError()
        if not await self._verify(user, old_password or ""):
            raise InvalidCredentialsError("Current password is incorrect")
        validate_password(new_password)

        new_hash = await self._hash(new_password)
        swapped = self._call_store(
            "update_password_hash",
            self.store.update_password_hash,
            user_id,
            new_hash,
            expected_hash=user.password_hash,
        )
        if not swapped:
            if self._call_store("get_user", self.store.get_user, user_id) is None:
                raise UserNotFoundError()
            # Another change landed first; the verified password is no longer current
            raise InvalidCredentialsError("Current password is incorrect")
        user.password_hash = new_hash

        try:
            self.store.delete_user_sessions(user_id)
        except Exception as exc:
            self.logger.warning(
                "password_change_session_purge_failed", user_id=user_id, error=str(exc)
            )
        self.logger.info("password_changed", user_id=user_id)
        await publish_best_effort(self.publisher, events.password_changed(user))

    async def list_sessions(self, user_id: str) -> List[Session]:
        return self._call_store(
            "list_active_sessions", self.store.list_active_sessions, user_id
        )

    async def cleanup_expired_sessions(self) -> int:
        removed = self._call_store(
            "delete_expired_sessions", self.store.delete_expired_sessions, utcnow()
        )
        if removed:
            self.logger.info("expired_sessions_removed", count=removed)
        return removed
