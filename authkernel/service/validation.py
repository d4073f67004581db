from __future__ import annotations

import re
import unicodedata
import uuid
from typing import Optional

from authkernel.service.errors import ValidationError, WeakPasswordError

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]{3,50}$")
MIN_PASSWORD_LENGTH = 8
MAX_NAME_LENGTH = 100


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_username(username: str) -> str:
    return (username or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def is_valid_username(username: str) -> bool:
    return bool(USERNAME_RE.match(username or ""))


def is_valid_id(value: str) -> bool:
    """Record ids are canonical hyphenated UUIDs; anything else cannot name a stored row."""
    text = str(value or "")
    try:
        return str(uuid.UUID(text)) == text.lower()
    except ValueError:
        return False


def is_strong_password(password: str) -> bool:
    """At least eight characters with an upper, a lower, a digit and a symbol.

    Classification is by unicode category, so non-ASCII letters, digits and
    punctuation count toward their class.
    """
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return False
    has_upper = has_lower = has_number = has_special = False
    for char in password:
        category = unicodedata.category(char)
        if category == "Lu":
            has_upper = True
        elif category == "Ll":
            has_lower = True
        elif category.startswith("N"):
            has_number = True
        elif category.startswith("P") or category.startswith("S"):
            has_special = True
    return has_upper and has_lower and has_number and has_special


def validate_email(email: str) -> str:
    normalized = normalize_email(email)
    if not is_valid_email(normalized):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


def validate_username(username: str) -> str:
    normalized = normalize_username(username)
    if not is_valid_username(normalized):
        raise ValidationError(
            "username must be 3-50 characters of letters, digits, '_' or '-'",
            detail={"field": "username"},
        )
    return normalized


def validate_password(password: str) -> str:
    if not is_strong_password(password):
        raise WeakPasswordError(detail={"field": "password"})
    return password


def clean_name(value: Optional[str], field: str) -> Optional[str]:
    """Trim an optional display name; blank becomes ``None``."""
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"{field} must be at most {MAX_NAME_LENGTH} characters", detail={"field": field}
        )
    return cleaned
