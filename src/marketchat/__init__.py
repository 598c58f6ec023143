"""Realtime messaging, unread counts, archive and session sync for the marketplace."""

from .archive import ArchiveCoordinator
from .backend import AuthSession, AuthUser, Backend, RowChange
from .client import Inbox, MessagingClient
from .config import SyncConfig
from .conversation import ConversationStore
from .errors import AccountRestricted, BackendError, Conflict, InvalidRequest, NotFound, PermissionDenied, TransientError
from .filters import Condition
from .local import Datastore, LocalBackend
from .market import CatalogService, RatingService, RatingSummary
from .notices import Notice, NoticeBoard
from .notifications import HeadlessPlatform, NotificationBridge, NotificationPlatform
from .profiles import ProfileService
from .rows import ArchivedConversation, Message, Product, Profile, Rating
from .session import Restriction, SessionContext
from .storage import Attachment
from .unread import UnreadAggregator

__all__ = [
    "AccountRestricted",
    "ArchiveCoordinator",
    "ArchivedConversation",
    "Attachment",
    "AuthSession",
    "AuthUser",
    "Backend",
    "BackendError",
    "CatalogService",
    "Condition",
    "Conflict",
    "ConversationStore",
    "Datastore",
    "HeadlessPlatform",
    "Inbox",
    "InvalidRequest",
    "LocalBackend",
    "Message",
    "MessagingClient",
    "NotFound",
    "Notice",
    "NoticeBoard",
    "NotificationBridge",
    "NotificationPlatform",
    "PermissionDenied",
    "Product",
    "Profile",
    "ProfileService",
    "Rating",
    "RatingService",
    "RatingSummary",
    "Restriction",
    "RowChange",
    "SessionContext",
    "SyncConfig",
    "TransientError",
    "UnreadAggregator",
]
