"""Legacy appointment billing and the session-billing guardrail."""

import logging
import uuid
from decimal import Decimal

import pytest

from consult_api.core.config import settings
from consult_api.core.errors import SessionBillingRequiredError
from consult_api.db.enums import AppointmentStatus, BillingSourceType, SessionType
from consult_api.db.models import Appointment, WalletTransaction
from consult_api.services import billing_guardrail, billing_service, session_service


def _appointment(db, participants, appointment_type="text") -> Appointment:
    appointment = Appointment(
        patient_id=participants.patient_id,
        doctor_id=participants.doctor_id,
        appointment_type=appointment_type,
        status=AppointmentStatus.CONFIRMED.value,
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    return appointment


def _session_backed(db, participants, clock) -> Appointment:
    appointment = _appointment(db, participants)
    session_service.start_text_session(
        db,
        patient_id=participants.patient_id,
        doctor_id=participants.doctor_id,
        appointment_id=appointment.id,
        now=clock.now(),
    )
    db.refresh(appointment)
    return appointment


def test_billing_source_for_legacy_appointment(db, participants):
    appointment = _appointment(db, participants)

    source = billing_guardrail.billing_source_for(appointment)

    assert source == billing_guardrail.LegacyAppointment(appointment_id=appointment.id)


def test_session_link_marks_appointment(db, participants, clock):
    appointment = _session_backed(db, participants, clock)

    source = billing_guardrail.billing_source_for(appointment)

    assert isinstance(source, billing_guardrail.SessionBacked)
    assert source.session_type == SessionType.TEXT.value
    assert appointment.status == AppointmentStatus.IN_PROGRESS.value


def test_enforced_guardrail_blocks_before_ledger(db, participants, clock):
    appointment = _session_backed(db, participants, clock)

    with pytest.raises(SessionBillingRequiredError):
        billing_service.process_appointment_end(
            db, appointment, endpoint="test", enforce=True, now=clock.now()
        )

    assert db.query(WalletTransaction).count() == 0
    db.refresh(appointment)
    assert appointment.billed_at is None


def test_unenforced_guardrail_warns_and_bills(db, participants, clock, caplog):
    appointment = _session_backed(db, participants, clock)

    with caplog.at_level(logging.WARNING):
        assert billing_service.process_appointment_end(
            db, appointment, endpoint="test", enforce=False, now=clock.now()
        )

    assert "guardrail not enforced" in caplog.text
    txn = db.query(WalletTransaction).one()
    assert txn.session_type == BillingSourceType.APPOINTMENT.value
    assert txn.session_id == appointment.id


def test_legacy_appointment_billed_once(db, participants, clock):
    appointment = _appointment(db, participants, "voice")

    first = session_service.end_appointment(
        db, appointment.id, actor_id=participants.doctor_id, endpoint="test", now=clock.now()
    )
    second = session_service.end_appointment(
        db, appointment.id, actor_id=participants.patient_id, endpoint="test", now=clock.now()
    )

    assert first.status == AppointmentStatus.COMPLETED.value
    assert second.billed_at == clock.now()
    assert db.query(WalletTransaction).count() == 1
    assert billing_service.ledger_total(
        db, BillingSourceType.APPOINTMENT.value, appointment.id
    ) == Decimal("5.00")


def test_session_end_completes_linked_appointment(db, participants, clock):
    appointment = _session_backed(db, participants, clock)
    session_id = appointment.session_id
    session_service.activate_text_session(
        db, session_id, actor_id=participants.doctor_id, now=clock.now()
    )
    clock.advance(minutes=4)
    session_service.end_text_session(db, session_id, actor_id=participants.patient_id, now=clock.now())

    db.refresh(appointment)
    assert appointment.status == AppointmentStatus.COMPLETED.value
    assert appointment.billed_at is None


@pytest.mark.asyncio
async def test_end_appointment_api_refuses_session_backed(db, participants, clock, client, monkeypatch):
    monkeypatch.setattr(settings, "ENFORCE_SESSION_BILLING_GUARDRAIL", True)
    appointment = _session_backed(db, participants, clock)

    response = await client.post(
        f"/appointments/{appointment.id}/end",
        headers={"X-User-Id": str(participants.doctor_id)},
    )

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "SESSION_BILLING_REQUIRED"


@pytest.mark.asyncio
async def test_appointment_session_status_api(db, participants, clock, client):
    appointment = _session_backed(db, participants, clock)

    response = await client.get(f"/appointments/{appointment.id}/session-status")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["billing_source"] == "session"
    assert data["session"]["status"] == "waiting_for_doctor"


@pytest.mark.asyncio
async def test_end_appointment_api_rejects_stranger(db, participants, client):
    appointment = _appointment(db, participants)

    response = await client.post(
        f"/appointments/{appointment.id}/end",
        headers={"X-User-Id": str(uuid.uuid4())},
    )

    assert response.status_code == 403
    assert response.json()["error_code"] == "NOT_PARTICIPANT"
