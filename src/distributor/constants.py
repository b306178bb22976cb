from typing import Final
from enum import StrEnum


class JobStatus(StrEnum):
    PENDING   = "pending"
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"
    CANCELLED = "cancelled"


class TaskStatus(StrEnum):
    PENDING    = "pending"
    PROCESSING = "processing"
    RETRYING   = "retrying"
    SENT       = "sent"
    CONFIRMED  = "confirmed"
    FAILED     = "failed"


class DeliveryMode(StrEnum):
    COST_SAVER     = "cost-saver"
    HIGH_ASSURANCE = "high-assurance"


class FeeTier(StrEnum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"


class DeliveryRoute(StrEnum):
    RPC            = "rpc"
    HIGH_ASSURANCE = "high-assurance"


TERMINAL_JOB_STATES: Final = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
TERMINAL_TASK_STATES: Final = {TaskStatus.CONFIRMED, TaskStatus.FAILED}
ELIGIBLE_TASK_STATES: Final = (TaskStatus.PENDING, TaskStatus.RETRYING)

# Allowed status moves. Writing the current status again is always allowed.
JOB_TRANSITIONS: Final = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}

TASK_TRANSITIONS: Final = {
    TaskStatus.PENDING: {TaskStatus.PROCESSING},
    TaskStatus.RETRYING: {TaskStatus.PROCESSING, TaskStatus.PENDING},
    # processing -> confirmed only happens when the "sent" write was lost
    TaskStatus.PROCESSING: {TaskStatus.SENT, TaskStatus.RETRYING, TaskStatus.FAILED, TaskStatus.CONFIRMED},
    TaskStatus.SENT: {TaskStatus.CONFIRMED, TaskStatus.FAILED},
    TaskStatus.CONFIRMED: set(),
    TaskStatus.FAILED: set(),
}

XRP: Final = "XRP"
XRP_DECIMALS: Final = 6

DEFAULT_BATCH_SIZE = 20
DEFAULT_MAX_RETRIES = 3
MAX_ERROR_LENGTH = 500

# Relay rate ceiling: 30 requests per 10 seconds, two relay calls per task
RELAY_RATE_LIMIT = 30
RELAY_RATE_WINDOW = 10.0
RELAY_CALLS_PER_TASK = 2

RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 300.0
REPO_WRITE_ATTEMPTS = 3
REPO_WRITE_PAUSE = 0.2
MONITOR_CONCURRENCY = 64

HORIZON = 20  # LastLedgerSequence offset from the reference validated ledger
EXPIRY_GRACE = 2
POLL_INTERVAL = 1.0
CONFIRM_TIMEOUT = 180.0
RPC_TIMEOUT = 2.0
SUBMIT_TIMEOUT = 20.0
MAX_FEE_DROPS = 1000
DEFAULT_FEE_DROPS = "10"
ACCOUNT_RESERVE_DROPS = 1_000_000  # base reserve, funds a new recipient account

__all__ = [
    "ACCOUNT_RESERVE_DROPS",
    "CONFIRM_TIMEOUT",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_FEE_DROPS",
    "DEFAULT_MAX_RETRIES",
    "ELIGIBLE_TASK_STATES",
    "EXPIRY_GRACE",
    "HORIZON",
    "JOB_TRANSITIONS",
    "MAX_ERROR_LENGTH",
    "MAX_FEE_DROPS",
    "MONITOR_CONCURRENCY",
    "POLL_INTERVAL",
    "RELAY_CALLS_PER_TASK",
    "RELAY_RATE_LIMIT",
    "RELAY_RATE_WINDOW",
    "REPO_WRITE_ATTEMPTS",
    "REPO_WRITE_PAUSE",
    "RETRY_BASE_DELAY",
    "RETRY_MAX_DELAY",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",
    "TASK_TRANSITIONS",
    "TERMINAL_JOB_STATES",
    "TERMINAL_TASK_STATES",
    "XRP",
    "XRP_DECIMALS",

    ######
    "DeliveryMode",
    "DeliveryRoute",
    "FeeTier",
    "JobStatus",
    "TaskStatus",
]
