"""KidPickup package for coordinating kindergarten pickups between parents and staff."""

from .admin import AdminService, AuditLog
from .api import ApiExporter
from .attendance import AttendanceBook, RosterEntry
from .chat import ChatService
from .consent import AuthorizedPickupRegistry
from .events import ChangeEvent, ChangeFeed, Subscription
from .exceptions import (
    InvalidTransitionError,
    KidPickupError,
    NotLinkedError,
    PermissionDeniedError,
    RecordNotFoundError,
    TransportError,
    ValidationError,
)
from .i18n import Translator
from .lifecycle import LIST_POLICIES, ListPolicy, PickupLifecycleManager
from .models import (
    ApprovalMode,
    AttendanceLog,
    AuthorizedPickupEntry,
    ChatMessage,
    Child,
    CompletionConfirmation,
    ParentProfile,
    PickupListing,
    PickupPersonOption,
    PickupRequest,
    PickupStatus,
    Role,
    UserAccount,
)
from .notifications import Notification, NotificationCenter, NotificationChannel, NotificationType
from .ops import HealthMonitor, StructuredLogger
from .security import AppContext, AuthManager
from .service import KidPickup
from .store import MemoryStore, Store
from .views import Notice, ParentDashboard, StaffDashboard

__all__ = [
    "AdminService",
    "ApiExporter",
    "AppContext",
    "ApprovalMode",
    "AttendanceBook",
    "AttendanceLog",
    "AuditLog",
    "AuthManager",
    "AuthorizedPickupEntry",
    "AuthorizedPickupRegistry",
    "ChangeEvent",
    "ChangeFeed",
    "ChatMessage",
    "ChatService",
    "Child",
    "CompletionConfirmation",
    "HealthMonitor",
    "InvalidTransitionError",
    "KidPickup",
    "KidPickupError",
    "LIST_POLICIES",
    "ListPolicy",
    "MemoryStore",
    "Notice",
    "NotLinkedError",
    "Notification",
    "NotificationCenter",
    "NotificationChannel",
    "NotificationType",
    "ParentDashboard",
    "ParentProfile",
    "PermissionDeniedError",
    "PickupLifecycleManager",
    "PickupListing",
    "PickupPersonOption",
    "PickupRequest",
    "PickupStatus",
    "RecordNotFoundError",
    "Role",
    "RosterEntry",
    "StaffDashboard",
    "Store",
    "StructuredLogger",
    "Subscription",
    "Translator",
    "TransportError",
    "UserAccount",
    "ValidationError",
]
