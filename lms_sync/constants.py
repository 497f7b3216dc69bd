# =============================================================================
# LMS Sync Client -- Constants
# =============================================================================
#
# Defaults for the offline queue, refresh coordination and request pipeline.
# Every config dataclass in types.py falls back to these values.
# =============================================================================

# -- Offline queue --------------------------------------------------------------

QUEUE_MAX_SIZE = 200
QUEUE_STORAGE_KEY = "lms_offline_queue"
QUEUE_LEGACY_KEY = "lms_progress_retry_queue_v1"
SESSION_STORAGE_KEY = "lms_session"

# -- Backoff (seconds) ----------------------------------------------------------

BACKOFF_BASE_DELAY = 2.0
BACKOFF_MAX_DELAY = 60.0

# -- Compaction ----------------------------------------------------------------

SNAPSHOT_MAX_LESSON_IDS = 500
SNAPSHOT_MAX_LESSONS = 1000

# -- Refresh coordination -------------------------------------------------------

REFRESH_WATCHDOG_TIMEOUT = 15.0
REFRESH_CHANNEL_NAME = "lms-auth-refresh"

MSG_REFRESH_START = "refresh-start"
MSG_REFRESH_END = "refresh-end"
MSG_REFRESH_TIMEOUT = "refresh-timeout"

# -- Request pipeline -----------------------------------------------------------

REQUEST_TIMEOUT = 12.0
SESSION_BOOTSTRAP_PATH = "/api/auth/session"
SESSION_REFRESH_PATH = "/api/auth/refresh"

RETRY_MARKER_HEADER = "X-Auth-Retry"
IDEMPOTENCY_HEADER = "Idempotency-Key"
CLIENT_REQUEST_ID_HEADER = "X-Client-Request-Id"

# -- Error codes ----------------------------------------------------------------

CODE_NOT_AUTHENTICATED = "not_authenticated"
CODE_TIMEOUT = "timeout"
CODE_NETWORK_ERROR = "network_error"
CODE_SESSION_REQUIRED = "SESSION_REQUIRED"

# -- Drain worker ---------------------------------------------------------------

DRAIN_ONLINE_DELAY = 0.5  # seconds after reconnect before draining

# -- Producer endpoints ---------------------------------------------------------

PROGRESS_EVENTS_PATH = "/api/learner/progress/events"
PROGRESS_SNAPSHOT_PATH = "/api/learner/progress"
ASSIGNMENT_PATH = "/api/admin/courses/{course_id}/assignments"
