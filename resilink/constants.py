# =============================================================================
# Resilink -- Transport Constants
# =============================================================================
#
# Durations are in seconds.
# =============================================================================

# -- HTTP retry ----------------------------------------------------------------

RETRY_MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0
RETRY_MULTIPLIER = 2.0
RETRYABLE_STATUSES = frozenset({500, 502, 503, 504})

# -- Timeouts ------------------------------------------------------------------

REQUEST_TIMEOUT = 10.0
REFRESH_TIMEOUT = 5.0
CONNECTION_TIMEOUT = 10.0

# -- Token refresh -------------------------------------------------------------

REFRESH_MAX_ATTEMPTS = 3
REFRESH_COOLDOWN = 5.0
AUTH_FAILURE_REARM_DELAY = 2.0

# -- WebSocket -----------------------------------------------------------------

HEARTBEAT_INTERVAL = 30.0
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
RECONNECT_MAX_ATTEMPTS = 10
MAX_MESSAGE_SIZE = 1_048_576  # 1 MB

HEARTBEAT_TYPE = "heartbeat"
GENERIC_MESSAGE_EVENT = "message"

# -- Bus events emitted by the transport itself --------------------------------

EVENT_CONNECTED = "connected"
EVENT_DISCONNECTED = "disconnected"
EVENT_RECONNECTING = "reconnecting"
EVENT_RECONNECT_FAILED = "reconnect_failed"
EVENT_ERROR = "error"
EVENT_LOGOUT = "logout"

# -- WebSocket close codes -----------------------------------------------------

WS_CLOSE_NORMAL = 1000
WS_CLOSE_ABNORMAL = 1006

# -- Endpoints -----------------------------------------------------------------

LOGIN_PATH = "/auth/login"
REFRESH_PATH = "/auth/refresh"
LOGOUT_PATH = "/auth/logout"
HEALTH_PATH = "/health"

# -- Persistence ---------------------------------------------------------------

STORAGE_KEY = "auth-storage"
