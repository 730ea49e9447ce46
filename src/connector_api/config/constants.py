"""
Centralized application constants.

This file acts as the single point of truth for business logic constants
shared across the connection service and the sync worker.
"""

# ==============================================================================
# OAUTH2 / CONNECTION LIFECYCLE
# ==============================================================================

# Authorization state and PKCE verifier lifetime (seconds)
OAUTH_STATE_TTL_SECONDS = 600

# Redis key prefixes for the authorization flow
OAUTH_STATE_KEY_PREFIX = "oauth2:state:"
OAUTH_PKCE_KEY_PREFIX = "oauth2:pkce:"

# Access tokens expiring within this window are refreshed before use
TOKEN_REFRESH_WINDOW_SECONDS = 10 * 60

# Refresh retry policy: 3 attempts total, 1s then 2s between attempts
TOKEN_REFRESH_MAX_ATTEMPTS = 3
TOKEN_REFRESH_BASE_DELAY_SECONDS = 1.0

# Error codes from the token endpoint that are worth retrying
RETRYABLE_TOKEN_ERROR_CODES = (
    "temporarily_unavailable",
    "server_error",
    "rate_limited",
)

# Proactive refresh picks connections expiring within this window
PROACTIVE_REFRESH_WINDOW_MINUTES = 15

# Token health report: "expiring soon" window
TOKEN_EXPIRING_SOON_HOURS = 1

REVOKED_CONNECTION_MESSAGE = "Connection revoked by user"

# Token endpoint HTTP timeout (seconds)
TOKEN_ENDPOINT_TIMEOUT = 30.0

# ==============================================================================
# SHEET SYNC
# ==============================================================================

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_CONCURRENCY = 3

# Pause between batches to respect the sheet provider's rate limits
INTER_BATCH_DELAY_SECONDS = 0.1

# Rows whose order id starts with this prefix were written by this system
SYSTEM_REFERENCE_PREFIX = "cmd"

# Sheet API retry policy (429 / 5xx)
SHEET_API_MAX_ATTEMPTS = 3
SHEET_API_BASE_DELAY_SECONDS = 1.0

# Last-row detection fallbacks
EMPTY_SHEET_LAST_ROW = 1
LAST_ROW_FALLBACK = 100

# Row highlight written back after a successful import
HIGHLIGHT_COLOR = {"red": 0.9, "green": 1.0, "blue": 0.9}
HIGHLIGHT_MAX_COLUMNS = 15

# Overlapping polling syncs for one spreadsheet are blocked for this long
SYNC_LOCK_TIMEOUT_SECONDS = 600
SYNC_LOCK_KEY_PREFIX = "sheet_sync:lock:"

# ==============================================================================
# DUPLICATE DETECTION
# ==============================================================================

EXACT_DUPLICATE_THRESHOLD = 0.95
FLAG_WITH_NOTES_THRESHOLD = 0.85
SIMILAR_DUPLICATE_THRESHOLD = 0.7
FUZZY_MATCH_THRESHOLD = 0.8

# Extended window, relative to the candidate's order date
EXTENDED_WINDOW_DAYS_BEFORE = 7
EXTENDED_WINDOW_DAYS_AFTER = 1
EXTENDED_WINDOW_CANDIDATES = 5

FUZZY_WINDOW_CANDIDATES = 10
FUZZY_ADDRESS_PREFIX_LENGTH = 20

# ==============================================================================
# ORDER MATERIALIZATION
# ==============================================================================

ORDER_NUMBER_PREFIX = "GS"
ORDER_SOURCE = "google_sheets"
DEFAULT_CURRENCY = "MAD"
DEFAULT_PAYMENT_METHOD = "COD"
DEFAULT_PRODUCT_STOCK = 100
ORDER_IMPORTED_ACTION = "order_imported"

# ==============================================================================
# SYNC MAINTENANCE
# ==============================================================================

# PENDING / PROCESSING operations older than this were orphaned by a restart or crash
STALE_SYNC_OPERATION_MINUTES = 30
STALE_SYNC_CHECK_INTERVAL_MINUTES = 5

# Finished operations older than this are pruned, always keeping the newest ones
SYNC_OPERATION_RETENTION_DAYS = 30
SYNC_OPERATION_KEEP_MINIMUM = 100

# ==============================================================================
# SPREADSHEET PUSH NOTIFICATIONS
# ==============================================================================

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_API_TIMEOUT = 30.0

# Drive channels last at most a day; renew the ones expiring soon every hour
WEBHOOK_CHANNEL_TTL_HOURS = 24
WEBHOOK_RENEWAL_INTERVAL_MINUTES = 60
WEBHOOK_RENEWAL_WINDOW_HOURS = 2
WEBHOOK_CLEANUP_INTERVAL_HOURS = 6
