"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    SESSION_AUTO_DEDUCTION = "session_auto_deduction"
    SESSION_AUTO_END = "session_auto_end"
    CALL_PROMOTE_CONNECTED = "call_promote_connected"
    BILLING_RECONCILE_SWEEP = "billing_reconcile_sweep"


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobQueueName(str, Enum):
    """Named queues. The degraded poller only drains these."""

    TEXT_SESSIONS = "text-sessions"
    CALL_SESSIONS = "call-sessions"
    BILLING = "billing"
