import uuid

from sqlalchemy import select

from carevault.modules.directory.models import Patient
from carevault.modules.sessions.models import ConsentSession

API = "/api/v1"


async def request_access(client, headers, subject_id, **extra):
    return await client.post(f"{API}/sessions/request", json={"subject_id": str(subject_id), **extra}, headers=headers)


async def test_health(client):
    r = await client.get(f"{API}/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


async def test_scenario_consent_grants_time_boxed_access(client, clock, as_doctor, as_patient, patient):
    r = await request_access(client, as_doctor, patient.id, label="Follow-up")
    assert r.status_code == 201
    session_id = r.json()["id"]
    assert r.json()["status"] == "pending"

    inbox = await client.get(f"{API}/sessions/requests", headers=as_patient)
    assert [s["id"] for s in inbox.json()] == [session_id]

    r = await client.post(f"{API}/sessions/{session_id}/respond", json={"decision": "accepted"}, headers=as_patient)
    assert r.status_code == 200
    assert r.json()["status"] == "accepted"

    assert (await client.get(f"{API}/patients/{patient.id}/summary", headers=as_doctor)).status_code == 200
    mine = (await client.get(f"{API}/sessions/mine", headers=as_doctor)).json()
    assert mine[0]["patient"]["id"] == str(patient.id)
    assert mine[0]["time_remaining_seconds"] == 20 * 60

    status = (await client.get(f"{API}/sessions/{session_id}/status", headers=as_doctor)).json()
    assert status["is_active"] is True

    clock.advance(minutes=20, seconds=1)
    r = await client.get(f"{API}/patients/{patient.id}/summary", headers=as_doctor)
    assert r.status_code == 403
    assert r.json()["code"] == "NO_ACTIVE_SESSION"
    assert (await client.get(f"{API}/sessions/mine", headers=as_doctor)).json() == []

    kinds = [n["kind"] for n in (await client.get(f"{API}/notifications", headers=as_doctor)).json()]
    assert kinds == ["session_accepted"]


async def test_scenario_duplicate_request_conflicts(client, as_doctor, patient):
    first = await request_access(client, as_doctor, patient.id)
    second = await request_access(client, as_doctor, patient.id)
    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["code"] == "DUPLICATE_ACTIVE_SESSION"
    assert second.json()["session_id"] == first.json()["id"]


async def test_scenario_capability_share_and_invalidate(client, as_patient, patient):
    issued = await client.post(f"{API}/capability/issue", headers=as_patient)
    assert issued.status_code == 201
    token = issued.json()["token"]

    r = await client.get(f"{API}/capability/resolve", params={"token": token})
    assert r.status_code == 200
    body = r.json()
    assert body["scope"] == "read"
    assert body["patient"]["email"] == "ada@example.com"
    assert "push_token" not in body["patient"]

    assert (await client.get(f"{API}/capability/validate", params={"token": token})).json()["valid"] is True

    r = await client.post(f"{API}/capability/invalidate", headers=as_patient)
    assert r.json() == {"ok": True, "expired": 1}

    r = await client.get(f"{API}/capability/resolve", params={"token": token})
    assert r.status_code == 401
    assert r.json()["code"] == "CAPABILITY_INVALID_OR_EXPIRED"
    validated = (await client.get(f"{API}/capability/validate", params={"token": token})).json()
    assert validated == {"valid": False, "reason": "not_active", "expires_at": None, "subject_id": None}

    audit = (await client.get(f"{API}/audit", headers=as_patient)).json()
    assert [(e["actor_role"], e["action"]) for e in audit] == [("anonymous", "resolve")]


async def test_capability_is_not_a_bearer_credential(client, as_patient):
    token = (await client.post(f"{API}/capability/issue", headers=as_patient)).json()["token"]
    r = await client.get(f"{API}/notifications", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


async def test_anonymous_request_through_capability(client, as_patient, patient):
    token = (await client.post(f"{API}/capability/issue", headers=as_patient)).json()["token"]
    r = await client.post(f"{API}/sessions/request/anonymous", json={"token": token})
    assert r.status_code == 201
    assert r.json()["requester_id"] is None
    assert r.json()["subject_id"] == str(patient.id)

    r = await client.post(f"{API}/sessions/request/anonymous", json={"token": "garbage"})
    assert r.status_code == 401


async def test_rotate_replaces_the_live_token(client, as_patient):
    first = (await client.post(f"{API}/capability/issue", headers=as_patient)).json()["token"]
    rotated = await client.post(f"{API}/capability/rotate", headers=as_patient)
    assert rotated.status_code == 201
    assert rotated.json()["expired"] == 1
    assert (await client.get(f"{API}/capability/validate", params={"token": first})).json()["valid"] is False


async def test_decline_and_respond_errors(client, clock, as_doctor, as_patient, doctor, patient):
    session_id = (await request_access(client, as_doctor, patient.id)).json()["id"]

    r = await client.post(f"{API}/sessions/{session_id}/respond", json={"decision": "declined"}, headers=as_doctor)
    assert r.status_code == 403

    r = await client.post(f"{API}/sessions/{session_id}/respond", json={"decision": "declined"}, headers=as_patient)
    assert r.json()["status"] == "declined"

    r = await client.post(f"{API}/sessions/{session_id}/respond", json={"decision": "accepted"}, headers=as_patient)
    assert r.status_code == 409
    assert r.json()["code"] == "ALREADY_RESOLVED"

    r = await client.post(f"{API}/sessions/{uuid.uuid4()}/respond", json={"decision": "accepted"}, headers=as_patient)
    assert r.status_code == 404

    expiring = (await request_access(client, as_doctor, patient.id)).json()["id"]
    clock.advance(minutes=21)
    r = await client.post(f"{API}/sessions/{expiring}/respond", json={"decision": "accepted"}, headers=as_patient)
    assert r.status_code == 410
    assert r.json()["code"] == "SESSION_EXPIRED"


async def test_validation_errors_are_400(client, as_doctor, as_patient, patient):
    r = await client.post(f"{API}/sessions/request", json={"subject_id": "nope"}, headers=as_doctor)
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"

    session_id = (await request_access(client, as_doctor, patient.id)).json()["id"]
    r = await client.post(f"{API}/sessions/{session_id}/respond", json={"decision": "maybe"}, headers=as_patient)
    assert r.status_code == 400


async def test_roles_and_credentials(client, bearer, as_doctor, as_patient, other_doctor, patient):
    assert (await request_access(client, {}, patient.id)).status_code == 401
    assert (await request_access(client, {"Authorization": "Bearer junk"}, patient.id)).status_code == 401

    r = await request_access(client, as_patient, patient.id)
    assert r.status_code == 403
    assert r.json()["code"] == "ROLE_NOT_ALLOWED"

    r = await request_access(client, as_doctor, uuid.uuid4())
    assert r.status_code == 404

    session_id = (await request_access(client, as_doctor, patient.id)).json()["id"]
    r = await client.get(f"{API}/sessions/{session_id}/status", headers=bearer(other_doctor.id, "doctor"))
    assert r.status_code == 404
    assert r.json()["code"] == "SESSION_NOT_FOUND"


async def test_gate_by_email_matches_any_stored_case(client, session, clock, as_doctor):
    bo = Patient(name="Bo Lind", email="Bo@Example.com", push_token=None)
    session.add(bo)
    await session.commit()

    for address in ("Bo@Example.com", "bo@example.com"):
        r = await client.get(f"{API}/patients/by-email/{address}/summary", headers=as_doctor)
        assert r.status_code == 403
        assert r.json()["code"] == "NO_ACTIVE_SESSION"
        assert r.json()["subject_id"] == str(bo.id)


async def test_cleanup_sweeps_expired(client, clock, session_factory, as_doctor, patient):
    await request_access(client, as_doctor, patient.id)
    clock.advance(minutes=25)
    r = await client.delete(f"{API}/sessions/cleanup", headers=as_doctor)
    assert r.json() == {"success": True, "deleted": 1}
    async with session_factory() as s:
        assert (await s.execute(select(ConsentSession))).scalars().all() == []


async def test_active_sessions_for_both_parties(client, as_doctor, as_patient, patient):
    session_id = (await request_access(client, as_doctor, patient.id)).json()["id"]
    await client.post(f"{API}/sessions/{session_id}/respond", json={"decision": "accepted"}, headers=as_patient)
    for headers in (as_doctor, as_patient):
        r = await client.get(f"{API}/sessions/active", headers=headers)
        assert [s["id"] for s in r.json()] == [session_id]


async def test_notification_endpoints(client, as_doctor, as_patient, patient):
    await request_access(client, as_doctor, patient.id)

    assert (await client.get(f"{API}/notifications/unread-count", headers=as_patient)).json() == {"count": 1}
    items = (await client.get(f"{API}/notifications", params={"unread_only": True}, headers=as_patient)).json()
    assert items[0]["kind"] == "session_request"
    assert items[0]["title"] == "New access request"

    r = await client.post(f"{API}/notifications/{items[0]['id']}/read", headers=as_doctor)
    assert r.status_code == 404

    r = await client.post(f"{API}/notifications/{items[0]['id']}/read", headers=as_patient)
    assert r.json()["read"] is True
    assert (await client.post(f"{API}/notifications/read-all", headers=as_patient)).json() == {"success": True, "updated": 0}
    assert (await client.get(f"{API}/notifications/unread-count", headers=as_patient)).json() == {"count": 0}


async def test_push_token_registration(client, session_factory, bearer, as_doctor, doctor):
    r = await client.post(f"{API}/notifications/push-token", json={"token": "new-device"}, headers=as_doctor)
    assert r.json() == {"success": True, "role": "doctor"}

    r = await client.post(f"{API}/notifications/push-token", json={"token": "x"}, headers=bearer(uuid.uuid4(), "doctor"))
    assert r.status_code == 400

    r = await client.post(f"{API}/notifications/push-token", json={"token": ""}, headers=as_doctor)
    assert r.status_code == 400


async def test_stream_requires_credentials(client):
    r = await client.get(f"{API}/notifications/stream")
    assert r.status_code == 401


async def test_manual_send_routes(client, session, bearer, as_doctor, as_patient, doctor, patient):
    r = await client.post(f"{API}/notifications/send",
                          json={"user_id": str(patient.id), "title": "Reminder", "body": "Bring your scans."},
                          headers=as_doctor)
    assert r.status_code == 201
    assert r.json()["recipient_id"] == str(patient.id)
    assert r.json()["push_registered"] is True

    r = await client.post(f"{API}/notifications/send",
                          json={"user_id": str(uuid.uuid4()), "title": "x", "body": "y"}, headers=as_doctor)
    assert r.status_code == 404
    assert r.json()["code"] == "RECIPIENT_NOT_FOUND"

    r = await client.post(f"{API}/notifications/send", json={"user_id": str(patient.id), "title": "", "body": "y"},
                          headers=as_doctor)
    assert r.status_code == 400

    bo = Patient(name="Bo Lind", email="bo@example.com")
    session.add(bo)
    await session.commit()
    r = await client.post(f"{API}/notifications/send-bulk",
                          json={"user_ids": [str(patient.id), str(bo.id), str(uuid.uuid4())], "title": "t", "body": "b"},
                          headers=as_patient)
    assert r.status_code == 201
    assert r.json()["total"] == 3
    assert r.json()["recorded"] == 2
    assert set(r.json()["recipients"]) == {str(patient.id), str(bo.id)}

    r = await client.post(f"{API}/notifications/send-bulk",
                          json={"user_ids": [str(uuid.uuid4())], "title": "t", "body": "b"}, headers=as_doctor)
    assert r.status_code == 400
    assert r.json()["code"] == "NO_RECIPIENTS"

    r = await client.post(f"{API}/notifications/send-all", json={"title": "Closed", "body": "Back Monday."},
                          headers=as_patient)
    assert r.status_code == 403
    r = await client.post(f"{API}/notifications/send-all", json={"title": "Closed", "body": "Back Monday."},
                          headers=as_doctor)
    assert r.json() == {"success": True, "total": 2}

    assert (await client.get(f"{API}/notifications/unread-count", headers=as_patient)).json() == {"count": 3}
    r = await client.post(f"{API}/notifications/send", json={"user_id": str(patient.id), "title": "t", "body": "b"})
    assert r.status_code == 401
