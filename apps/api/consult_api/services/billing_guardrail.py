"""
Guardrail for the legacy appointment billing path.

Once a text or call session owns a consultation, the session lifecycle bills
it unit by unit. Billing the same consultation again through the appointment
endpoints would double-charge the patient, so those endpoints must ask here
first.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from consult_api.core.config import settings
from consult_api.core.errors import SessionBillingRequiredError
from consult_api.core.structured_logging import build_log_context
from consult_api.db.models import Appointment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LegacyAppointment:
    """Consultation billed once, on appointment completion."""

    appointment_id: uuid.UUID


@dataclass(frozen=True)
class SessionBacked:
    """Consultation billed by a text/call session."""

    appointment_id: uuid.UUID
    session_type: str | None
    session_id: uuid.UUID


BillingSource = LegacyAppointment | SessionBacked


def billing_source_for(appointment: Appointment) -> BillingSource:
    if appointment.session_id is not None:
        return SessionBacked(
            appointment_id=appointment.id,
            session_type=appointment.session_type,
            session_id=appointment.session_id,
        )
    return LegacyAppointment(appointment_id=appointment.id)


def check_appointment_billing_guardrail(
    appointment: Appointment,
    endpoint: str,
    enforce: bool | None = None,
) -> BillingSource:
    """
    Decide whether legacy billing may proceed for this appointment.

    Raises SessionBillingRequiredError when the appointment is session-backed
    and enforcement is on. With enforcement off the violation is logged and
    the caller proceeds (migration window).
    """
    if enforce is None:
        enforce = settings.ENFORCE_SESSION_BILLING_GUARDRAIL

    source = billing_source_for(appointment)
    match source:
        case LegacyAppointment():
            return source
        case SessionBacked(session_id=session_id, session_type=session_type):
            context = build_log_context(
                appointment_id=str(appointment.id),
                session_id=str(session_id),
                session_type=session_type,
                route=endpoint,
            )
            if enforce:
                logger.warning(
                    "Blocked legacy billing for session-backed appointment %s via %s",
                    appointment.id,
                    endpoint,
                    extra=context,
                )
                raise SessionBillingRequiredError(
                    f"Appointment {appointment.id} is billed by {session_type} {session_id}; "
                    "end the session instead"
                )
            logger.warning(
                "Legacy billing used for session-backed appointment %s via %s (guardrail not enforced)",
                appointment.id,
                endpoint,
                extra=context,
            )
            return source
