"""HTTP surface: envelopes, participant checks and internal endpoints."""

import uuid

import pytest

from consult_api.db.enums import JobStatus, JobType
from consult_api.db.models import PatientSubscription, WalletTransaction


def _as(user_id) -> dict:
    return {"X-User-Id": str(user_id)}


INTERNAL = {"X-Internal-Secret": "test-internal-secret"}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_text_session_flow(client, db, participants, clock):
    response = await client.post(
        "/text-sessions/start",
        json={"doctor_id": str(participants.doctor_id)},
        headers=_as(participants.patient_id),
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    session_id = body["data"]["id"]
    assert body["data"]["status"] == "waiting_for_doctor"
    assert body["data"]["sessions_remaining_before_start"] == 3

    response = await client.get(f"/text-sessions/{session_id}/check-response")
    assert response.json()["data"]["time_remaining_seconds"] == 90

    response = await client.post(
        f"/text-sessions/{session_id}/activate", headers=_as(participants.doctor_id)
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "active"

    clock.advance(minutes=23)
    response = await client.get(f"/text-sessions/{session_id}")
    data = response.json()["data"]
    assert data["elapsed_minutes"] == 23
    assert data["remaining_time_minutes"] == 7

    response = await client.post(
        f"/text-sessions/{session_id}/end", headers=_as(participants.patient_id)
    )
    data = response.json()["data"]
    assert data["status"] == "ended"
    assert data["sessions_used"] == 3
    assert data["manual_deduction_applied"] is True
    assert db.query(WalletTransaction).count() == 3


@pytest.mark.asyncio
async def test_second_open_text_session_conflicts(client, participants):
    payload = {"doctor_id": str(participants.doctor_id)}
    await client.post("/text-sessions/start", json=payload, headers=_as(participants.patient_id))

    response = await client.post(
        "/text-sessions/start", json=payload, headers=_as(participants.patient_id)
    )

    assert response.status_code == 409
    assert response.json() == {
        "success": False,
        "message": "An open text session already exists with this doctor",
        "error_code": "SESSION_CONFLICT",
    }


@pytest.mark.asyncio
async def test_start_without_quota_is_payment_required(client, db):
    patient_id = uuid.uuid4()
    db.add(PatientSubscription(patient_id=patient_id, text_sessions_remaining=0))
    db.commit()

    response = await client.post(
        "/text-sessions/start",
        json={"doctor_id": str(uuid.uuid4())},
        headers=_as(patient_id),
    )

    assert response.status_code == 402
    assert response.json()["error_code"] == "INSUFFICIENT_QUOTA"


@pytest.mark.asyncio
async def test_only_doctor_activates(client, participants):
    response = await client.post(
        "/text-sessions/start",
        json={"doctor_id": str(participants.doctor_id)},
        headers=_as(participants.patient_id),
    )
    session_id = response.json()["data"]["id"]

    response = await client.post(
        f"/text-sessions/{session_id}/activate", headers=_as(participants.patient_id)
    )

    assert response.status_code == 403
    assert response.json()["error_code"] == "NOT_PARTICIPANT"


@pytest.mark.asyncio
async def test_unknown_session_is_404(client):
    response = await client.get(f"/text-sessions/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["error_code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_invalid_user_header_is_401(client, participants):
    response = await client.post(
        "/text-sessions/start",
        json={"doctor_id": str(participants.doctor_id)},
        headers={"X-User-Id": "not-a-uuid"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_call_flow(client, db, participants, clock):
    response = await client.post(
        "/call-sessions/start",
        json={"doctor_id": str(participants.doctor_id), "call_type": "video"},
        headers=_as(participants.patient_id),
    )
    assert response.status_code == 201
    call = response.json()["data"]
    assert call["modality"] == "video"
    assert call["status"] == "pending"

    response = await client.post(
        f"/call-sessions/{call['id']}/answer", headers=_as(participants.doctor_id)
    )
    assert response.json()["data"]["status"] == "answered"

    clock.advance(seconds=6)
    response = await client.post("/internal/scheduled/process-queue", headers=INTERNAL)
    assert response.json() == {"processed": 1}

    response = await client.get(f"/call-sessions/{call['id']}")
    data = response.json()["data"]
    assert data["status"] == "connected"
    assert data["connected_at"] == data["answered_at"]

    clock.advance(minutes=4)
    response = await client.post(
        f"/call-sessions/{call['id']}/end", headers=_as(participants.patient_id)
    )
    assert response.json()["data"]["status"] == "ended"
    assert db.query(WalletTransaction).count() == 1


@pytest.mark.asyncio
async def test_text_call_type_is_rejected(client, participants):
    response = await client.post(
        "/call-sessions/start",
        json={"doctor_id": str(participants.doctor_id), "call_type": "text"},
        headers=_as(participants.patient_id),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_decline_call(client, participants):
    response = await client.post(
        "/call-sessions/start",
        json={"doctor_id": str(participants.doctor_id)},
        headers=_as(participants.patient_id),
    )
    call_id = response.json()["data"]["id"]

    response = await client.post(
        f"/call-sessions/{call_id}/decline", headers=_as(participants.doctor_id)
    )

    assert response.json()["data"]["status"] == "declined"


@pytest.mark.asyncio
async def test_internal_endpoints_require_secret(client):
    response = await client.post("/internal/scheduled/process-queue")
    assert response.status_code == 422

    response = await client.post(
        "/internal/scheduled/reconcile", headers={"X-Internal-Secret": "wrong"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_reconcile_endpoint(client):
    response = await client.post("/internal/scheduled/reconcile", headers=INTERNAL)
    assert response.status_code == 200
    assert response.json() == {
        "released_jobs": 0,
        "promoted_calls": 0,
        "expired_sessions": 0,
        "repaired_units": 0,
    }


@pytest.mark.asyncio
async def test_jobs_endpoints(client, participants):
    response = await client.post(
        "/text-sessions/start",
        json={"doctor_id": str(participants.doctor_id)},
        headers=_as(participants.patient_id),
    )
    session_id = response.json()["data"]["id"]
    await client.post(f"/text-sessions/{session_id}/activate", headers=_as(participants.doctor_id))

    response = await client.get("/jobs")
    assert response.status_code == 422

    response = await client.get(
        "/jobs", params={"job_type": JobType.SESSION_AUTO_DEDUCTION.value}, headers=INTERNAL
    )
    assert response.status_code == 200
    jobs = response.json()
    assert len(jobs) == 2
    assert {j["status"] for j in jobs} == {JobStatus.PENDING.value}

    response = await client.get(f"/jobs/{jobs[0]['id']}", headers=INTERNAL)
    assert response.json()["payload"]["session_id"] == session_id

    response = await client.get(f"/jobs/{uuid.uuid4()}", headers=INTERNAL)
    assert response.status_code == 404
