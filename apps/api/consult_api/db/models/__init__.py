"""SQLAlchemy ORM models."""

from consult_api.db.models.appointments import Appointment
from consult_api.db.models.billing import DoctorWallet, PatientSubscription, WalletTransaction
from consult_api.db.models.jobs import Job
from consult_api.db.models.sessions import CallSession, SessionMixin, TextSession

__all__ = [
    "Appointment",
    "CallSession",
    "DoctorWallet",
    "Job",
    "PatientSubscription",
    "SessionMixin",
    "TextSession",
    "WalletTransaction",
]
