"""Custom exception hierarchy for the KidPickup package."""

from __future__ import annotations

from typing import Optional


class KidPickupError(Exception):
    """Base class for all KidPickup specific errors.

    ``message_key`` names the translation used when the error is shown to a
    user; ``field`` optionally points at the offending input.
    """

    message_key = "error.generic"

    def __init__(self, message: str = "", *, message_key: Optional[str] = None, field: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__doc__ or "")
        if message_key is not None:
            self.message_key = message_key
        self.field = field


class ValidationError(KidPickupError):
    """Raised when input is malformed or references something it may not."""

    message_key = "error.validation"


class InvalidTransitionError(KidPickupError):
    """Raised when a pickup request is moved out of a status that forbids it."""

    message_key = "error.invalid_transition"

    def __init__(self, message: str = "", *, current: Optional[str] = None, expected: Optional[str] = None) -> None:
        super().__init__(message)
        self.current = current
        self.expected = expected


class NotLinkedError(KidPickupError):
    """Raised when a parent acts on a child they are not linked to."""

    message_key = "error.not_linked"


class TransportError(KidPickupError):
    """Raised when the persistence or event backend cannot be reached."""

    message_key = "error.transport"


class RecordNotFoundError(KidPickupError):
    """Raised when a record lookup by id fails."""

    message_key = "error.not_found"


class PermissionDeniedError(KidPickupError):
    """Raised when the caller lacks the role required for an operation."""

    message_key = "error.permission"
