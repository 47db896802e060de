"""
Shared constants for ConversionClient.
Single source of truth — imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "ConversionClient"
APP_DISPLAY_NAME = "Conversion Client"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = HOME / ".local" / "share" / "conversion-client"
LOG_DIR = APP_SUPPORT_DIR / "logs"
DB_PATH = APP_SUPPORT_DIR / "tasks.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"

DEFAULT_DOWNLOAD_DIR = HOME / "Downloads" / "Converted"
DEFAULT_ARCHIVE_DIR = DEFAULT_DOWNLOAD_DIR / "originals"


# ── Local task status values ──────────────────────────────────────────
class TaskStatus:
    PENDING = "Pending"
    UPLOADING = "Uploading"
    CONVERTING = "Converting"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
}


# ── Displayed progress states (superset of TaskStatus) ────────────────
class ProgressState:
    PENDING = "Pending"
    UPLOADING = "Uploading"
    UPLOAD_COMPLETED = "UploadCompleted"
    CONVERTING = "Converting"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


# Ordering used to arbitrate between the transfer and push channels.
PROGRESS_STATE_RANK = {
    ProgressState.PENDING: 0,
    ProgressState.UPLOADING: 1,
    ProgressState.UPLOAD_COMPLETED: 2,
    ProgressState.CONVERTING: 3,
    ProgressState.COMPLETED: 4,
    ProgressState.FAILED: 4,
    ProgressState.CANCELLED: 4,
}

# Persisted status for each displayed state
PROGRESS_STATE_TO_STATUS = {
    ProgressState.PENDING: TaskStatus.PENDING,
    ProgressState.UPLOADING: TaskStatus.UPLOADING,
    ProgressState.UPLOAD_COMPLETED: TaskStatus.UPLOADING,
    ProgressState.CONVERTING: TaskStatus.CONVERTING,
    ProgressState.COMPLETED: TaskStatus.COMPLETED,
    ProgressState.FAILED: TaskStatus.FAILED,
    ProgressState.CANCELLED: TaskStatus.CANCELLED,
}


# ── Phase tags (free-form sub-state stored on the record) ─────────────
class TaskPhase:
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOAD_COMPLETED = "upload_completed"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PHASE_TO_PROGRESS_STATE = {
    TaskPhase.PENDING: ProgressState.PENDING,
    TaskPhase.UPLOADING: ProgressState.UPLOADING,
    TaskPhase.UPLOAD_COMPLETED: ProgressState.UPLOAD_COMPLETED,
    TaskPhase.CONVERTING: ProgressState.CONVERTING,
    TaskPhase.COMPLETED: ProgressState.COMPLETED,
    TaskPhase.FAILED: ProgressState.FAILED,
    TaskPhase.CANCELLED: ProgressState.CANCELLED,
}


# ── Remote service status codes ───────────────────────────────────────
class RemoteStatus:
    PENDING = 0
    CONVERTING = 1
    COMPLETED = 2
    FAILED = 3
    CANCELLED = 4


REMOTE_STATUS_TO_TASK_STATUS = {
    RemoteStatus.PENDING: TaskStatus.PENDING,
    RemoteStatus.CONVERTING: TaskStatus.CONVERTING,
    RemoteStatus.COMPLETED: TaskStatus.COMPLETED,
    RemoteStatus.FAILED: TaskStatus.FAILED,
    RemoteStatus.CANCELLED: TaskStatus.CANCELLED,
}


# ── Source file post-processing ───────────────────────────────────────
class SourceFileAction:
    KEEP = "keep"
    DELETE = "delete"
    ARCHIVE = "archive"


SOURCE_FILE_ACTIONS = (
    SourceFileAction.KEEP,
    SourceFileAction.DELETE,
    SourceFileAction.ARCHIVE,
)


# ── Match kinds reported by reconciliation ────────────────────────────
class MatchKind:
    SERVER_ID = "server_id"
    CURRENT_ID = "current_id"
    FUZZY = "fuzzy"


# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    UNKNOWN_IDENTIFIER = "ERR_UNKNOWN_IDENTIFIER"
    SUBMISSION_REJECTED = "ERR_SUBMISSION_REJECTED"
    FILE_NOT_FOUND = "ERR_FILE_NOT_FOUND"
    AMBIGUOUS_MATCH = "ERR_AMBIGUOUS_MATCH"
    OUTPUT_MISSING = "ERR_OUTPUT_MISSING"
    RETRIES_EXHAUSTED = "ERR_RETRIES_EXHAUSTED"
    INVALID_RESPONSE = "ERR_INVALID_RESPONSE"

    # Retryable
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    REQUEST_TIMEOUT = "ERR_REQUEST_TIMEOUT"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    SERVER_ERROR = "ERR_SERVER_ERROR"
    SUBMISSION_TIMEOUT = "ERR_SUBMISSION_TIMEOUT"


RETRYABLE_ERRORS = {
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.REQUEST_TIMEOUT,
    ErrorCode.RATE_LIMITED,
    ErrorCode.SERVER_ERROR,
    ErrorCode.SUBMISSION_TIMEOUT,
}

# ── Reconciliation ────────────────────────────────────────────────────
FUZZY_SIZE_TOLERANCE_BYTES = 1024

# ── Retry / scheduling defaults ───────────────────────────────────────
DEFAULT_MAX_RETRIES = 3
DEFAULT_PAGE_SIZE = 50
MAX_TASK_LIST_PAGES = 20
DEFAULT_REFRESH_INTERVAL_SEC = 30
DEFAULT_REQUEST_TIMEOUT_SEC = 30
DEFAULT_SUBMIT_TIMEOUT_SEC = 3600
LOCK_STRIPES = 64

# ── Remote service ────────────────────────────────────────────────────
DEFAULT_SERVER_URL = "http://localhost:5065"
API_HEALTH = "/api/health"
API_START_CONVERSION = "/api/conversion/start"
API_TASK_LIST = "/api/task/list"
API_CANCEL_TASK = "/api/conversion/cancel/{task_id}"
API_DELETE_TASK = "/api/conversion/task/{task_id}"
API_DOWNLOAD = "/api/conversion/download/{task_id}"

UPLOAD_READ_CHUNK = 1024 * 1024

# Characters forbidden in output file names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FILENAME_LEN = 200
