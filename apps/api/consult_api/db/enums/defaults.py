"""Centralized defaults for enums."""

from consult_api.db.enums.appointments import AppointmentStatus
from consult_api.db.enums.jobs import JobStatus


DEFAULT_JOB_STATUS: JobStatus = JobStatus.PENDING
DEFAULT_APPOINTMENT_STATUS: AppointmentStatus = AppointmentStatus.PENDING
