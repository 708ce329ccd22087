"""Pydantic schemas for legacy appointments."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from consult_api.schemas.session import SessionRead


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    patient_id: UUID
    doctor_id: UUID
    appointment_type: str
    status: str
    scheduled_at: datetime | None
    session_type: str | None
    session_id: UUID | None
    billed_at: datetime | None


class AppointmentSessionStatus(BaseModel):
    """Which path bills the appointment and, when session-backed, the session state."""
    appointment_id: UUID
    appointment_status: str
    billing_source: Literal["session", "appointment"]
    billed_at: datetime | None
    session: SessionRead | None = None
