"""campussync - Realtime sync and optimistic updates for a campus social feed."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("campussync")
except PackageNotFoundError:
    __version__ = "0+local"
from campussync.client import CampusClient
from campussync.config import CampusConfig, RetryPolicy
from campussync.exceptions import (
    ApiError,
    CampusSyncError,
    ConfigError,
    CredentialExpiredError,
    NetworkTransientError,
    PermissionDeniedError,
    RateLimitedError,
    RequestTimeoutError,
    ServiceError,
    TerminalConnectionError,
    TransportError,
    UploadValidationError,
)
from campussync.executor import ResilientExecutor
from campussync.health import ConnectionHealthMonitor
from campussync.history import load_chat_history, save_chat_history
from campussync.models import (
    ChatMessage,
    ChatRole,
    MediaKind,
    Post,
    PostComment,
    PostLike,
    Profile,
    UploadResult,
)
from campussync.optimistic import OptimisticStore
from campussync.reconciler import LiveCollection, RealtimeReconciler, SubscriptionHandle, SubscriptionState
from campussync.request_queue import SerialRequestQueue
from campussync.session import Session, SessionManager
from campussync.state.collection import OrderedCollection, Ordering
from campussync.state.events import ChangeEvent, ChangeKind, ChannelStatus, SubscriptionKey
from campussync.toasts import Position, Severity, ToastBus, ToastMessage

__all__ = [
    "__version__",
    "ApiError",
    "CampusClient",
    "CampusConfig",
    "CampusSyncError",
    "ChangeEvent",
    "ChangeKind",
    "ChannelStatus",
    "ChatMessage",
    "ChatRole",
    "ConfigError",
    "ConnectionHealthMonitor",
    "CredentialExpiredError",
    "LiveCollection",
    "MediaKind",
    "NetworkTransientError",
    "OptimisticStore",
    "OrderedCollection",
    "Ordering",
    "PermissionDeniedError",
    "Position",
    "Post",
    "PostComment",
    "PostLike",
    "Profile",
    "RateLimitedError",
    "RealtimeReconciler",
    "RequestTimeoutError",
    "ResilientExecutor",
    "RetryPolicy",
    "SerialRequestQueue",
    "ServiceError",
    "Session",
    "SessionManager",
    "Severity",
    "SubscriptionHandle",
    "SubscriptionKey",
    "SubscriptionState",
    "TerminalConnectionError",
    "ToastBus",
    "ToastMessage",
    "TransportError",
    "UploadResult",
    "UploadValidationError",
    "load_chat_history",
    "save_chat_history",
]
