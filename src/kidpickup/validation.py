"""Input validation helpers shared by the KidPickup workflows."""

from __future__ import annotations

import re
from datetime import date
from typing import Optional

from .exceptions import ValidationError

NAME_PATTERN = re.compile(r"^[a-zA-ZæøåÆØÅ\s\-']+$")
PHONE_PATTERN = re.compile(r"^[+]?[\d\s\-()]+$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MAX_ESTIMATED_MINUTES = 240
MAX_CHAT_MESSAGE_LENGTH = 1000


def _require_length(value: str, *, minimum: int, maximum: int, field: str, key: Optional[str] = None) -> str:
    key = key or field
    if len(value) < minimum:
        raise ValidationError(f"{field} must be at least {minimum} characters.", message_key=f"validation.{key}.short", field=field)
    if len(value) > maximum:
        raise ValidationError(f"{field} must be at most {maximum} characters.", message_key=f"validation.{key}.long", field=field)
    return value


def person_name(value: str, *, field: str = "name") -> str:
    """Return ``value`` trimmed, ensuring it reads as a person's name."""

    cleaned = (value or "").strip()
    _require_length(cleaned, minimum=2, maximum=100, field=field, key="name")
    if not NAME_PATTERN.match(cleaned):
        raise ValidationError("Names may only contain letters, spaces, hyphens and apostrophes.", message_key="validation.name.characters", field=field)
    return cleaned


def relationship(value: str) -> str:
    return _require_length((value or "").strip(), minimum=2, maximum=50, field="relationship")


def phone(value: Optional[str]) -> Optional[str]:
    """Validate an optional phone number; blank input means no number."""

    cleaned = (value or "").strip()
    if not cleaned:
        return None
    if not PHONE_PATTERN.match(cleaned):
        raise ValidationError("Invalid phone number.", message_key="validation.phone.invalid", field="phone")
    return _require_length(cleaned, minimum=8, maximum=20, field="phone")


def email(value: str) -> str:
    cleaned = (value or "").strip().lower()
    if not EMAIL_PATTERN.match(cleaned) or len(cleaned) > 255:
        raise ValidationError("Invalid email address.", message_key="validation.email.invalid", field="email")
    return cleaned


def password(value: str) -> str:
    """Require at least eight characters mixing lower case, upper case and digits."""

    raw = value or ""
    _require_length(raw, minimum=8, maximum=100, field="password")
    if not (re.search(r"[a-z]", raw) and re.search(r"[A-Z]", raw) and re.search(r"[0-9]", raw)):
        raise ValidationError("Password is too weak.", message_key="validation.password.weak", field="password")
    return raw


def notes(value: Optional[str]) -> str:
    return _require_length((value or "").strip(), minimum=0, maximum=500, field="notes")


def birth_date(value: Optional[str]) -> Optional[date]:
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    try:
        return date.fromisoformat(cleaned)
    except ValueError as exc:
        raise ValidationError("Invalid date.", message_key="validation.birth_date.invalid", field="birth_date") from exc


def chat_message(value: str) -> str:
    return _require_length((value or "").strip(), minimum=1, maximum=MAX_CHAT_MESSAGE_LENGTH, field="message")


def estimated_minutes(value: Optional[int]) -> Optional[int]:
    """Accept ``None`` (no estimate) or a whole number of minutes up to the maximum."""

    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Estimated minutes must be a whole number.", message_key="validation.estimate.invalid", field="estimated_minutes")
    if value < 0 or value > MAX_ESTIMATED_MINUTES:
        raise ValidationError(
            f"Estimated minutes must be between 0 and {MAX_ESTIMATED_MINUTES}.",
            message_key="validation.estimate.range",
            field="estimated_minutes",
        )
    return value


__all__ = [
    "MAX_CHAT_MESSAGE_LENGTH",
    "MAX_ESTIMATED_MINUTES",
    "birth_date",
    "chat_message",
    "email",
    "estimated_minutes",
    "notes",
    "password",
    "person_name",
    "phone",
    "relationship",
]
