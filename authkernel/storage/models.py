from __future__ import annotations

import ipaddress
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

DEFAULT_IP_ADDRESS = "127.0.0.1"
DEFAULT_USER_AGENT = "Unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_ip_address(value: Optional[str]) -> str:
    """Return a canonical IP string, falling back to loopback for blank or invalid input."""
    if not value or not value.strip():
        return DEFAULT_IP_ADDRESS
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return DEFAULT_IP_ADDRESS


def normalize_user_agent(value: Optional[str]) -> str:
    if not value or not value.strip():
        return DEFAULT_USER_AGENT
    return value.strip()


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        username: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_public(self, roles: Optional[List[str]] = None) -> Dict:
        """Projection safe to return to clients; never carries the password hash."""
        public = {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if roles is not None:
            public["roles"] = list(roles)
        return public


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, name: str, description: Optional[str] = None) -> "Role":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            created_at=now,
            updated_at=now,
        )


# Seeded by the schema migration and by the in-memory store
DEFAULT_ROLES = {
    "admin": "Administrator with full access",
    "user": "Regular user with basic access",
    "moderator": "Moderator with limited admin access",
}


@dataclass
class UserRole:
    id: str
    user_id: str
    role_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    user_agent: str = DEFAULT_USER_AGENT
    ip_address: str = DEFAULT_IP_ADDRESS
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        ttl_seconds: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        if ttl_seconds <= 0:
            raise ValueError("session ttl must be positive")
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=now + timedelta(seconds=ttl_seconds),
            user_agent=normalize_user_agent(user_agent),
            ip_address=normalize_ip_address(ip_address),
            is_active=True,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        # A session expiring exactly now is already expired
        return (now or utcnow()) >= self.expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)

    def to_public(self) -> Dict:
        return {
            "id": self.id,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
            "is_active": self.is_active,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
        }
