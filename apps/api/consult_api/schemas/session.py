"""Pydantic schemas for text and call sessions."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel

from consult_api.db.enums import Modality


class TextSessionStart(BaseModel):
    """Start a text session with a doctor (caller is the patient)."""
    doctor_id: UUID
    appointment_id: UUID | None = None


class CallSessionStart(BaseModel):
    """Start a voice or video call with a doctor (caller is the patient)."""
    doctor_id: UUID
    call_type: Literal["voice", "video"] = Modality.VOICE.value
    appointment_id: UUID | None = None


class SessionRead(BaseModel):
    """Session state plus derived billing fields."""
    id: UUID
    session_type: str
    patient_id: UUID
    doctor_id: UUID
    modality: str
    appointment_id: UUID | None
    status: str
    reason: str | None
    created_at: datetime | None
    started_at: datetime | None
    ended_at: datetime | None
    is_active: bool
    sessions_remaining_before_start: int
    sessions_used: int
    auto_deductions_processed: int
    manual_deduction_applied: bool
    elapsed_minutes: int
    remaining_time_minutes: int
    remaining_sessions: int
    next_auto_deduction_at: datetime | None = None

    # text only
    doctor_response_deadline: datetime | None = None

    # call only
    answered_at: datetime | None = None
    answered_by: UUID | None = None
    connected_at: datetime | None = None
    declined_at: datetime | None = None


class DoctorResponseCheck(BaseModel):
    session_id: UUID
    status: str
    doctor_responded: bool
    time_remaining_seconds: int
    reason: str | None
