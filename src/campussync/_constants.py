"""Internal constants shared across the library."""

USER_AGENT = "campussync/python"
REST_PREFIX = "/rest/v1"
AUTH_PREFIX = "/auth/v1"
STORAGE_PREFIX = "/storage/v1"
FUNCTIONS_PREFIX = "/functions/v1"
REALTIME_PATH = "/realtime/v1/websocket"

PERMISSION_DENIED_CODES: frozenset[str] = frozenset({"42501"})
CREDENTIAL_EXPIRED_CODES: frozenset[str] = frozenset({"refresh_token_not_found", "session_not_found"})
SERVICE_ERROR_STATUSES: frozenset[int] = frozenset({500, 502, 503, 504})

# ------------------------------------------------------------------
# User-facing status texts
# ------------------------------------------------------------------

MSG_RETRYING = "Connection issue. Retrying..."
MSG_UNREACHABLE = "Unable to connect. Please check your internet connection."
MSG_TIMEOUT = "Request timeout. Please try again."
MSG_PERMISSION_DENIED = "You do not have permission to perform this action."
MSG_SESSION_EXPIRED = "Your session has expired. Please sign in again."
MSG_REQUEST_FAILED = "Something went wrong. Please try again."
MSG_OFFLINE = "You are offline. Changes will sync when you reconnect."
MSG_BACK_ONLINE = "Back online! Syncing changes..."
MSG_CONNECTION_LOST = "Connection lost. Attempting to reconnect..."
MSG_RECONNECTED = "Connected successfully!"
MSG_HISTORY_SAVE_FAILED = "Failed to save chat history"
MSG_HISTORY_LOAD_FAILED = "Failed to load chat history"

# ------------------------------------------------------------------
# Media upload limits
# ------------------------------------------------------------------

MAX_IMAGE_BYTES = 15 * 1024 * 1024
MAX_VIDEO_BYTES = 15 * 1024 * 1024
ALLOWED_IMAGE_TYPES: tuple[str, ...] = ("image/jpeg", "image/png", "image/gif")
ALLOWED_VIDEO_TYPES: tuple[str, ...] = ("video/mp4", "video/quicktime", "video/x-msvideo")
UPLOAD_CHUNK_BYTES = 64 * 1024
STORAGE_CACHE_CONTROL = "3600"
