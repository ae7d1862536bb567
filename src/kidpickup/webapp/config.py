"""Configuration constants for the KidPickup web frontend."""
from __future__ import annotations

import os
from datetime import timedelta
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()

SESSION_SECRET = os.environ.get("SESSION_SECRET", "change-this-session-secret")
SQLITE_FILE_NAME = os.environ.get("KIDPICKUP_SQLITE", "kidpickup.db")
DEFAULT_LOCALE = os.environ.get("KIDPICKUP_LOCALE", "nb")
SUPPORTED_LOCALES: Tuple[str, ...] = ("nb", "en")
CHAT_RETENTION = timedelta(hours=int(os.environ.get("KIDPICKUP_CHAT_RETENTION_HOURS", "24")))
ADMIN_EMAIL = os.environ.get("KIDPICKUP_ADMIN_EMAIL", "admin@kidpickup.local")
ADMIN_PASSWORD = os.environ.get("KIDPICKUP_ADMIN_PASSWORD", "ChangeMe123")
SESSION_KEY = "kidpickup_session"
LOCALE_KEY = "locale"

__all__ = [
    "ADMIN_EMAIL",
    "ADMIN_PASSWORD",
    "CHAT_RETENTION",
    "DEFAULT_LOCALE",
    "LOCALE_KEY",
    "SESSION_KEY",
    "SESSION_SECRET",
    "SQLITE_FILE_NAME",
    "SUPPORTED_LOCALES",
]
