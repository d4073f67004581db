from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from authkernel.logging import get_logger
from authkernel.storage.models import Role, User, utcnow
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)

EVENT_VERSION = "1.0"

TOPIC_USER_REGISTERED = "user.registered"
TOPIC_USER_LOGGED_IN = "user.logged_in"
TOPIC_USER_LOGGED_OUT = "user.logged_out"
TOPIC_PASSWORD_CHANGED = "user.password_changed"
TOPIC_USER_ACTIVATED = "user.activated"
TOPIC_USER_DEACTIVATED = "user.deactivated"
TOPIC_USER_DELETED = "user.deleted"
TOPIC_ROLE_ASSIGNED = "user.role_assigned"
TOPIC_ROLE_REMOVED = "user.role_removed"


@dataclass
class AuthEvent:
    """Account lifecycle event; ``type`` doubles as the topic it is published to."""

    type: str
    user_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    version: str = EVENT_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "user_id": self.user_id,
            **self.data,
        }


def user_registered(user: User) -> AuthEvent:
    return AuthEvent(
        TOPIC_USER_REGISTERED,
        user.id,
        {
            "email": user.email,
            "username": user.username,
            "first_name": user.first_name,
            "last_name": user.last_name,
        },
    )


def user_logged_in(user: User, ip_address: str, user_agent: str) -> AuthEvent:
    return AuthEvent(
        TOPIC_USER_LOGGED_IN,
        user.id,
        {"email": user.email, "ip_address": ip_address, "user_agent": user_agent},
    )


def user_logged_out(user_id: str, email: Optional[str], session_id: str) -> AuthEvent:
    return AuthEvent(
        TOPIC_USER_LOGGED_OUT,
        user_id,
        {"email": email or "", "session_id": session_id},
    )


def password_changed(user: User) -> AuthEvent:
    return AuthEvent(TOPIC_PASSWORD_CHANGED, user.id, {"email": user.email})


def user_activated(user: User) -> AuthEvent:
    return AuthEvent(TOPIC_USER_ACTIVATED, user.id, {"email": user.email})


def user_deactivated(user: User) -> AuthEvent:
    return AuthEvent(TOPIC_USER_DEACTIVATED, user.id, {"email": user.email})


def user_deleted(user: User) -> AuthEvent:
    return AuthEvent(TOPIC_USER_DELETED, user.id, {"email": user.email})


def role_assigned(user_id: str, role: Role) -> AuthEvent:
    return AuthEvent(
        TOPIC_ROLE_ASSIGNED, user_id, {"role_id": role.id, "role_name": role.name}
    )


def role_removed(user_id: str, role: Role) -> AuthEvent:
    return AuthEvent(
        TOPIC_ROLE_REMOVED, user_id, {"role_id": role.id, "role_name": role.name}
    )


class EventPublisher(Protocol):
    async def publish(self, event: AuthEvent) -> None: ...


class LoggingEventPublisher:
    """Fallback publisher used when no Redis is configured."""

    async def publish(self, event: AuthEvent) -> None:
        logger.info(
            "auth_event",
            event_type=event.type,
            event_id=event.id,
            user_id=event.user_id,
        )


class RedisEventPublisher:
    """Appends events to one Redis stream per topic, keyed by user id."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def publish(self, event: AuthEvent) -> None:
        entry_id = await self.cache.publish_event(event.type, event.user_id, event.to_dict())
        logger.debug("auth_event_published", event_type=event.type, entry_id=entry_id)


async def publish_best_effort(publisher: Optional[EventPublisher], event: AuthEvent) -> None:
    """Publish ``event``; failures are logged and never propagate."""
    if publisher is None:
        return
    try:
        await publisher.publish(event)
    except Exception as exc:
        logger.warning(
            "event_publish_failed",
            event_type=event.type,
            user_id=event.user_id,
            error=str(exc),
        )
