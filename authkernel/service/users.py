from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from authkernel.logging import get_logger
from authkernel.service import events
from authkernel.service.auth import AuthStore
from authkernel.service.errors import (
    DatabaseError,
    RoleNotFoundError,
    ServiceError,
    UserNotFoundError,
    UsernameExistsError,
)
from authkernel.service.events import EventPublisher, publish_best_effort
from authkernel.service.validation import clean_name, is_valid_id, validate_username
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import Role, User

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass
class UserPage:
    users: List[User]
    total: int
    page: int
    page_size: int
    total_pages: int


class UserService:
    """Profile management and the administrative operations on accounts and roles."""

    def __init__(self, store: AuthStore, *, publisher: Optional[EventPublisher] = None) -> None:
        self.store = store
        self.publisher = publisher

    def _call_store(self, operation: str, func: Callable[..., T], *args, **kwargs) -> T:
        try:
            return func(*args, **kwargs)
        except (ConstraintViolation, ServiceError):
            raise
        except Exception as exc:
            logger.error(
                "store_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DatabaseError(cause=exc) from exc

    def _require_user(self, user_id: str) -> User:
        if not is_valid_id(user_id):
            raise UserNotFoundError()
        user = self._call_store("get_user", self.store.get_user, user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    def _require_role(self, role_id: str) -> Role:
        if not is_valid_id(role_id):
            raise RoleNotFoundError()
        role = self._call_store("get_role", self.store.get_role, role_id)
        if role is None:
            raise RoleNotFoundError()
        return role

    async def get_profile(self, user_id: str) -> User:
        return self._require_user(user_id)

    async def get_user(self, user_id: str) -> User:
        return self._require_user(user_id)

    async def update_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        username: Optional[str] = None,
    ) -> User:
        """Apply the given fields; ``None`` leaves a field unchanged."""
        user = self._require_user(user_id)
        if first_name is not None:
            user.first_name = clean_name(first_name, "first_name")
        if last_name is not None:
            user.last_name = clean_name(last_name, "last_name")
        if username is not None:
            candidate = validate_username(username)
            if candidate != user.username:
                if self._call_store("username_exists", self.store.username_exists, candidate):
                    raise UsernameExistsError()
                user.username = candidate
        try:
            updated = self._call_store("update_user", self.store.update_user, user)
        except ConstraintViolation as exc:
            if exc.field == "username":
                raise UsernameExistsError() from exc
            raise DatabaseError(cause=exc) from exc
        if updated is None:
            raise UserNotFoundError()
        logger.info("user_profile_updated", user_id=user_id)
        return updated

    async def delete_account(self, user_id: str) -> None:
        user = self._require_user(user_id)
        try:
            with self.store.transaction():
                if not self.store.delete_user(user_id):
                    raise UserNotFoundError()
                self.store.delete_user_sessions(user_id)
        except ServiceError:
            raise
        except Exception as exc:
            logger.error("user_delete_failed", user_id=user_id, error=str(exc))
            raise DatabaseError(cause=exc) from exc
        logger.info("user_deleted", user_id=user_id)
        await publish_best_effort(self.publisher, events.user_deleted(user))

    async def list_users(self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> UserPage:
        if page < 1:
            page = 1
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            page_size = DEFAULT_PAGE_SIZE
        offset = (page - 1) * page_size
        users = self._call_store("list_users", self.store.list_users, page_size, offset)
        total = self._call_store("count_users", self.store.count_users)
        return UserPage(
            users=users,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0,
        )

    async def activate_user(self, user_id: str) -> User:
        user = self._require_user(user_id)
        if user.is_active:
            return user
        user.is_active = True
        updated = self._call_store("update_user", self.store.update_user, user)
        if updated is None:
            raise UserNotFoundError()
        logger.info("user_activated", user_id=user_id)
        await publish_best_effort(self.publisher, events.user_activated(updated))
        return updated

    async def deactivate_user(self, user_id: str) -> User:
        """Mark the account inactive and end every session it holds."""
        user = self._require_user(user_id)
        if not user.is_active:
            return user
        user.is_active = False
        updated = self._call_store("update_user", self.store.update_user, user)
        if updated is None:
            raise UserNotFoundError()
        removed = self._call_store(
            "delete_user_sessions", self.store.delete_user_sessions, user_id
        )
        logger.info("user_deactivated", user_id=user_id, sessions_removed=removed)
        await publish_best_effort(self.publisher, events.user_deactivated(updated))
        return updated

    async def assign_role(self, user_id: str, role_id: str) -> Role:
        self._require_user(user_id)
        role = self._require_role(role_id)
        try:
            self._call_store("assign_role", self.store.assign_role, user_id, role_id)
        except ConstraintViolation as exc:
            if exc.field == "role_id":
                raise RoleNotFoundError() from exc
            raise UserNotFoundError() from exc
        logger.info("role_assigned", user_id=user_id, role=role.name)
        await publish_best_effort(self.publisher, events.role_assigned(user_id, role))
        return role

    async def remove_role(self, user_id: str, role_id: str) -> bool:
        self._require_user(user_id)
        role = self._require_role(role_id)
        removed = self._call_store("remove_role", self.store.remove_role, user_id, role_id)
        if removed:
            logger.info("role_removed", user_id=user_id, role=role.name)
            await publish_best_effort(self.publisher, events.role_removed(user_id, role))
        return removed

    async def get_user_roles(self, user_id: str) -> List[Role]:
        self._require_user(user_id)
        return self._call_store("get_user_roles", self.store.get_user_roles, user_id)

    async def list_roles(self) -> List[Role]:
        return self._call_store("list_roles", self.store.list_roles)
