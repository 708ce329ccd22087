"""SQLAlchemy ORM models for consultation sessions."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import ClassVar

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column, validates

from consult_api.core import session_rules
from consult_api.core.clock import ensure_utc
from consult_api.core.errors import ConnectedAtOverwriteError, InvalidTransitionError
from consult_api.db.base import Base
from consult_api.db.enums import Modality, SessionStatus, SessionType


class SessionMixin:
    """
    Columns shared by text and call sessions.

    Billing bookkeeping:
    - sessions_remaining_before_start: patient quota snapshot at creation
    - sessions_used: units billed so far (one per ledger credit)
    - auto_deductions_processed: highest auto-deduction count applied (monotonic)
    - manual_deduction_applied: session was ended by a participant (+1 unit)
    """

    session_type: ClassVar[SessionType]

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    doctor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    modality: Mapped[str] = mapped_column(String(10), nullable=False)
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)

    sessions_remaining_before_start: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )
    sessions_used: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )
    auto_deductions_processed: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )
    manual_deduction_applied: Mapped[bool] = mapped_column(
        Boolean, server_default=text("false"), default=False, nullable=False
    )

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        value = SessionStatus(value).value
        current = self.status
        if current is None:
            if value not in session_rules.INITIAL_STATUSES[self.session_type]:
                raise InvalidTransitionError(
                    f"{self.session_type.value} cannot be created in status '{value}'"
                )
            return value
        if current != value and not session_rules.can_transition(self.session_type, current, value):
            raise InvalidTransitionError(
                f"{self.session_type.value} cannot move from '{current}' to '{value}'"
            )
        return value

    @validates("modality")
    def _validate_modality(self, key: str, value: str) -> str:
        return Modality(value).value

    @property
    def is_active(self) -> bool:
        return session_rules.is_billing_active(self)

    @property
    def source_key(self) -> str:
        """Identifier used in chat/queue routing (e.g. text_session_<id>)."""
        return f"{self.session_type.value}_{self.id}"


class TextSession(SessionMixin, Base):
    """
    A text consultation.

    Created waiting for the doctor; activated (and the billing clock started)
    when the doctor first responds.
    """

    __tablename__ = "text_sessions"
    __table_args__ = (
        Index("idx_text_sessions_status", "status"),
        Index("idx_text_sessions_pair_status", "patient_id", "doctor_id", "status"),
        CheckConstraint("sessions_used >= 0", name="ck_text_sessions_used_nonneg"),
    )

    session_type: ClassVar[SessionType] = SessionType.TEXT

    doctor_response_deadline: Mapped[datetime | None] = mapped_column(nullable=True)


class CallSession(SessionMixin, Base):
    """
    A voice or video consultation.

    connected_at is the billing anchor and is write-once: it always equals
    answered_at, whichever path (promotion job, hang-up, sweep) sets it.
    """

    __tablename__ = "call_sessions"
    __table_args__ = (
        Index("idx_call_sessions_status", "status"),
        Index("idx_call_sessions_appointment", "appointment_id"),
        CheckConstraint("sessions_used >= 0", name="ck_call_sessions_used_nonneg"),
    )

    session_type: ClassVar[SessionType] = SessionType.CALL

    answered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    answered_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    connected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @validates("connected_at")
    def _validate_connected_at(self, key: str, value: datetime | None) -> datetime | None:
        current = self.connected_at
        if current is not None and ensure_utc(value) != ensure_utc(current):
            raise ConnectedAtOverwriteError(
                f"connected_at already set for call session {self.id}"
            )
        return value
