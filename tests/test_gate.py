import asyncio
import uuid

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from carevault.api.deps import get_clock
from carevault.core.config import settings
from carevault.core.db import get_session
from carevault.core.errors import AppError
from carevault.main import app_error_handler
from carevault.modules.audit.models import AuditEvent
from carevault.modules.sessions.gate import GateDecision, SubjectFrom, require_grant
from carevault.modules.sessions.models import ACCEPTED
from carevault.modules.sessions.service import ConsentService


async def grant(session, clock, doctor_id, patient_id):
    svc = ConsentService(session, clock=clock)
    obj = await svc.create_request(doctor_id, patient_id)
    return await svc.respond(obj.id, patient_id, ACCEPTED)


# ---------- routes on the real app ----------

async def test_doctor_without_grant_is_denied(client, as_doctor, patient):
    r = await client.get(f"/api/v1/patients/{patient.id}/summary", headers=as_doctor)
    assert r.status_code == 403
    body = r.json()
    assert body["code"] == "NO_ACTIVE_SESSION"
    assert body["subject_id"] == str(patient.id)


async def test_doctor_with_grant_reads_summary(client, session, clock, as_doctor, doctor, patient):
    await grant(session, clock, doctor.id, patient.id)
    r = await client.get(f"/api/v1/patients/{patient.id}/summary", headers=as_doctor)
    assert r.status_code == 200
    assert r.json()["email"] == "ada@example.com"


async def test_grant_is_per_requester(client, session, clock, bearer, doctor, other_doctor, patient):
    await grant(session, clock, doctor.id, patient.id)
    r = await client.get(f"/api/v1/patients/{patient.id}/summary", headers=bearer(other_doctor.id, "doctor"))
    assert r.status_code == 403


async def test_patient_reads_own_summary_only(client, session, as_patient, patient):
    r = await client.get(f"/api/v1/patients/{patient.id}/summary", headers=as_patient)
    assert r.status_code == 200
    r = await client.get(f"/api/v1/patients/{uuid.uuid4()}/summary", headers=as_patient)
    assert r.status_code == 403


async def test_email_variant_resolves_through_directory(client, session, clock, as_doctor, doctor, patient):
    r = await client.get("/api/v1/patients/by-email/ada@example.com/summary", headers=as_doctor)
    assert r.status_code == 403

    await grant(session, clock, doctor.id, patient.id)
    r = await client.get("/api/v1/patients/by-email/ADA@example.com/summary", headers=as_doctor)
    assert r.status_code == 200
    assert r.json()["id"] == str(patient.id)

    r = await client.get("/api/v1/patients/by-email/nobody@example.com/summary", headers=as_doctor)
    assert r.status_code == 404
    assert r.json()["code"] == "SUBJECT_NOT_FOUND"


async def test_access_lapses_without_revoke(client, session, clock, as_doctor, doctor, patient):
    await grant(session, clock, doctor.id, patient.id)
    clock.advance(minutes=19)
    assert (await client.get(f"/api/v1/patients/{patient.id}/summary", headers=as_doctor)).status_code == 200
    clock.advance(minutes=2)
    assert (await client.get(f"/api/v1/patients/{patient.id}/summary", headers=as_doctor)).status_code == 403


async def test_gated_decisions_are_audited(client, session, clock, as_doctor, doctor, patient):
    await client.get(f"/api/v1/patients/{patient.id}/summary", headers=as_doctor)
    await grant(session, clock, doctor.id, patient.id)
    await client.get(f"/api/v1/patients/{patient.id}/summary", headers=as_doctor)

    rows = (await session.execute(
        select(AuditEvent).where(AuditEvent.actor_id == str(doctor.id)).order_by(AuditEvent.occurred_at)
    )).scalars().all()
    assert [(e.action, e.success) for e in rows] == [("deny", False), ("read", True)]
    assert all(e.resource_id == str(patient.id) for e in rows)



async def test_stalled_grant_check_fails_closed(client, session, monkeypatch, as_doctor, doctor, patient):
    async def stalled(self, requester_id, subject_id):
        await asyncio.sleep(30)

    monkeypatch.setattr(ConsentService, "find_grant", stalled)
    monkeypatch.setattr(settings, "DB_TIMEOUT_SECONDS", 0.2)

    r = await asyncio.wait_for(client.get(f"/api/v1/patients/{patient.id}/summary", headers=as_doctor), timeout=5)
    assert r.status_code == 503
    assert r.json()["code"] == "GRANT_CHECK_TIMEOUT"
    assert r.json()["subject_id"] == str(patient.id)


# ---------- declared sources and the missing-subject policy ----------

@pytest.fixture
async def gated_app(session_factory, clock):
    api = FastAPI()
    api.add_exception_handler(AppError, app_error_handler)

    def summary(decision: GateDecision):
        return {"reason": decision.reason, "subject_id": str(decision.subject_id) if decision.subject_id else None}

    @api.get("/open")
    async def open_route(decision: GateDecision = Depends(require_grant())):
        return summary(decision)

    @api.get("/items/{id}")
    async def by_default_sources(id: str, decision: GateDecision = Depends(require_grant())):
        return summary(decision)

    @api.post("/notes")
    async def by_body(decision: GateDecision = Depends(require_grant(SubjectFrom.body("patient_id")))):
        return summary(decision)

    @api.get("/strict")
    async def strict(decision: GateDecision = Depends(require_grant(SubjectFrom.query("patient_id"), on_missing="deny"))):
        return summary(decision)

    async def _session():
        async with session_factory() as s:
            yield s

    api.dependency_overrides[get_session] = _session
    api.dependency_overrides[get_clock] = lambda: clock
    async with AsyncClient(transport=ASGITransport(app=api), base_url="http://gated") as c:
        yield c


async def test_unresolvable_subject_passes_by_default(gated_app, as_doctor):
    r = await gated_app.get("/open", headers=as_doctor)
    assert r.status_code == 200
    assert r.json()["reason"] == "no_subject"


async def test_non_uuid_value_is_unresolvable(gated_app, as_doctor):
    r = await gated_app.get("/items/not-a-uuid", headers=as_doctor)
    assert r.status_code == 200
    assert r.json()["reason"] == "no_subject"


async def test_default_sources_read_path_id(gated_app, as_doctor, patient):
    r = await gated_app.get(f"/items/{patient.id}", headers=as_doctor)
    assert r.status_code == 403


async def test_body_source(gated_app, session, clock, as_doctor, doctor, patient):
    r = await gated_app.post("/notes", json={"patient_id": str(patient.id)}, headers=as_doctor)
    assert r.status_code == 403

    await grant(session, clock, doctor.id, patient.id)
    r = await gated_app.post("/notes", json={"patient_id": str(patient.id)}, headers=as_doctor)
    assert r.status_code == 200
    assert r.json() == {"reason": "grant", "subject_id": str(patient.id)}


async def test_deny_policy_rejects_missing_subject(gated_app, as_doctor, patient):
    r = await gated_app.get("/strict", headers=as_doctor)
    assert r.status_code == 403
    assert r.json()["code"] == "NO_ACTIVE_SESSION"


async def test_subject_and_ungated_roles_pass(gated_app, bearer, as_patient, patient):
    r = await gated_app.get(f"/items/{patient.id}", headers=as_patient)
    assert r.json()["reason"] == "self"
    r = await gated_app.get(f"/items/{patient.id}", headers=bearer(uuid.uuid4(), "nurse"))
    assert r.json()["reason"] == "ungated_role"


async def test_missing_credential_is_401(gated_app, patient):
    r = await gated_app.get(f"/items/{patient.id}")
    assert r.status_code == 401
