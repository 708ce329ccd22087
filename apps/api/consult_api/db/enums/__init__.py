"""Enum definitions for application constants."""

from consult_api.db.enums.appointments import AppointmentStatus
from consult_api.db.enums.billing import BillingSourceType, Currency, TransactionType
from consult_api.db.enums.defaults import DEFAULT_APPOINTMENT_STATUS, DEFAULT_JOB_STATUS
from consult_api.db.enums.jobs import JobQueueName, JobStatus, JobType
from consult_api.db.enums.sessions import EndReason, Modality, SessionStatus, SessionType

__all__ = [
    "AppointmentStatus",
    "BillingSourceType",
    "Currency",
    "DEFAULT_APPOINTMENT_STATUS",
    "DEFAULT_JOB_STATUS",
    "EndReason",
    "JobQueueName",
    "JobStatus",
    "JobType",
    "Modality",
    "SessionStatus",
    "SessionType",
    "TransactionType",
]
