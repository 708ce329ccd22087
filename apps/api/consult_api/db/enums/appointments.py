"""Appointment-related enums."""

from enum import Enum


class AppointmentStatus(str, Enum):
    """Status of legacy appointments."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
