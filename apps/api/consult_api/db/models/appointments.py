"""SQLAlchemy ORM model for legacy appointments."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Index, Integer, String, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from consult_api.db.base import Base
from consult_api.db.enums import DEFAULT_APPOINTMENT_STATUS


class Appointment(Base):
    """
    A booked consultation.

    Historically billed directly on completion (legacy path). Once a session
    owns the consultation, session_id is set and billing must come from the
    session instead.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_session", "session_type", "session_id"),
        Index("idx_appointments_doctor_status", "doctor_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    doctor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    appointment_type: Mapped[str] = mapped_column(String(10), nullable=False)  # text, voice, video
    status: Mapped[str] = mapped_column(
        String(20),
        server_default=text(f"'{DEFAULT_APPOINTMENT_STATUS.value}'"),
        default=DEFAULT_APPOINTMENT_STATUS.value,
        nullable=False,
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    duration_minutes: Mapped[int] = mapped_column(
        Integer, server_default=text("30"), default=30, nullable=False
    )

    # Set once a text/call session owns this consultation
    session_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    billed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
