from __future__ import annotations

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    DEFAULT_ROLES,
    Role,
    Session,
    User,
    UserRole,
    normalize_ip_address,
    normalize_user_agent,
    utcnow,
)


class MemoryStore:
    """In-process users/roles/sessions store.

    Every public method takes ``_data_lock`` so the store can be shared across
    threads. Records are copied on the way in and out; callers mutate their
    copy and write it back with ``update_*``. When ``state_path`` is given the
    whole state is written to that JSON file after each mutation and reloaded
    on start.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, UserRole] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so transaction() can wrap calls that take the lock again
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self._state_path = Path(state_path) if state_path else None

        if not self._load_state():
            self._seed_roles()
            self._persist_state()

    def _seed_roles(self) -> None:
        for name, description in DEFAULT_ROLES.items():
            if not any(r.name == name for r in self.roles.values()):
                role = Role.new(name, description)
                self.roles[role.id] = role

    # -- transactions -------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Group several calls; any exception restores the prior state."""
        with self._data_lock:
            snapshot = (
                copy.deepcopy(self.users),
                copy.deepcopy(self.roles),
                copy.deepcopy(self.user_roles),
                copy.deepcopy(self.sessions),
            )
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self.users, self.roles, self.user_roles, self.sessions = snapshot
                raise
            finally:
                self._tx_depth -= 1
            self._persist_state()

    # -- users --------------------------------------------------------------

    def _live_users(self) -> List[User]:
        return [u for u in self.users.values() if not u.is_deleted]

    def _check_user_unique(self, user: User) -> None:
        for existing in self._live_users():
            if existing.id == user.id:
                continue
            if existing.email == user.email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == user.username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self._check_user_unique(user)
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_deleted:
                return None
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self._live_users() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self._live_users() if u.username == username), None
            )
            return replace(user) if user else None

    def update_user(self, user: User) -> Optional[User]:
        with self._data_lock:
            current = self.users.get(user.id)
            if not current or current.is_deleted:
                return None
            self._check_user_unique(user)
            updated = replace(user, updated_at=utcnow(), deleted_at=None)
            self.users[user.id] = updated
            self._persist_state()
            return replace(updated)

    def update_last_login(self, user_id: str, at: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_deleted:
                return False
            user.last_login_at = at
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def update_password_hash(
        self, user_id: str, password_hash: str, *, expected_hash: Optional[str] = None
    ) -> bool:
        """Replace the hash; with ``expected_hash`` only if it is still the stored one."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_deleted:
                return False
            if expected_hash is not None and user.password_hash != expected_hash:
                return False
            user.password_hash = password_hash
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def delete_user(self, user_id: str) -> bool:
        """Soft delete: the row stays but disappears from every lookup."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_deleted:
                return False
            now = utcnow()
            user.deleted_at = now
            user.updated_at = now
            self._persist_state()
            return True

    def list_users(self, limit: int = 20, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(
                self._live_users(), key=lambda u: u.created_at, reverse=True
            )
            return [replace(u) for u in ordered[offset : offset + limit]]

    def count_users(self) -> int:
        with self._data_lock:
            return len(self._live_users())

    def email_exists(self, email: str) -> bool:
        with self._data_lock:
            return any(u.email == email for u in self._live_users())

    def username_exists(self, username: str) -> bool:
        with self._data_lock:
            return any(u.username == username for u in self._live_users())

    # -- roles --------------------------------------------------------------

    def create_role(self, role: Role) -> Role:
        with self._data_lock:
            if any(r.name == role.name for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            self.roles[role.id] = replace(role)
            self._persist_state()
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return replace(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in sorted(self.roles.values(), key=lambda r: r.name)]

    def update_role(self, role: Role) -> Optional[Role]:
        with self._data_lock:
            if role.id not in self.roles:
                return None
            if any(r.name == role.name and r.id != role.id for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            updated = replace(role, updated_at=utcnow())
            self.roles[role.id] = updated
            self._persist_state()
            return replace(updated)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            for link_id, link in list(self.user_roles.items()):
                if link.role_id == role_id:
                    self.user_roles.pop(link_id, None)
            self._persist_state()
            return True

    def assign_role(self, user_id: str, role_id: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"field": "role_id"})
            if any(
                link.user_id == user_id and link.role_id == role_id
                for link in self.user_roles.values()
            ):
                return
            link = UserRole(id=str(uuid.uuid4()), user_id=user_id, role_id=role_id)
            self.user_roles[link.id] = link
            self._persist_state()

    def remove_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            stale = [
                link_id
                for link_id, link in self.user_roles.items()
                if link.user_id == user_id and link.role_id == role_id
            ]
            for link_id in stale:
                self.user_roles.pop(link_id, None)
            if stale:
                self._persist_state()
            return bool(stale)

    def get_user_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            role_ids = {
                link.role_id for link in self.user_roles.values() if link.user_id == user_id
            }
            roles = [self.roles[rid] for rid in role_ids if rid in self.roles]
            return [replace(r) for r in sorted(roles, key=lambda r: r.name)]

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            if any(
                s.refresh_token == session.refresh_token for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            stored = replace(
                session,
                ip_address=normalize_ip_address(session.ip_address),
                user_agent=normalize_user_agent(session.user_agent),
            )
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.refresh_token == refresh_token),
                None,
            )
            return replace(sess) if sess else None

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            now = utcnow()
            active = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_usable(now)
            ]
            return [replace(s) for s in sorted(active, key=lambda s: s.created_at, reverse=True)]

    def update_session(self, session: Session) -> Optional[Session]:
        with self._data_lock:
            if session.id not in self.sessions:
                return None
            updated = replace(session, updated_at=utcnow())
            self.sessions[session.id] = updated
            self._persist_state()
            return replace(updated)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            cutoff = now or utcnow()
            stale = [
                sid for sid, sess in self.sessions.items() if sess.is_expired(cutoff)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        if self._state_path is None or self._tx_depth > 0:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "user_roles": [
                self._serialize_user_role(link) for link in self.user_roles.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        if self._state_path is None:
            return False
        try:
            data = json.loads(self._state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.roles = {r["id"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.user_roles = {
            link["id"]: self._deserialize_user_role(link)
            for link in data.get("user_roles", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._seed_roles()
        self.logger.info(
            "memory_store_loaded",
            path=str(self._state_path),
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "is_active": user.is_active,
            "is_verified": user.is_verified,
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_active=data.get("is_active", True),
            is_verified=data.get("is_verified", False),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_role(self, role: Role) -> dict:
        return {
            "id": role.id,
            "name": role.name,
            "description": role.description,
            "created_at": self._serialize_datetime(role.created_at),
            "updated_at": self._serialize_datetime(role.updated_at),
        }

    def _deserialize_role(self, data: dict) -> Role:
        return Role(
            id=str(data["id"]),
            name=data["name"],
            description=data.get("description"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_user_role(self, link: UserRole) -> dict:
        return {
            "id": link.id,
            "user_id": link.user_id,
            "role_id": link.role_id,
            "created_at": self._serialize_datetime(link.created_at),
        }

    def _deserialize_user_role(self, data: dict) -> UserRole:
        return UserRole(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            role_id=str(data["role_id"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
            "is_active": session.is_active,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            user_agent=normalize_user_agent(data.get("user_agent")),
            ip_address=normalize_ip_address(data.get("ip_address")),
            is_active=data.get("is_active", True),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )
