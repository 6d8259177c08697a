import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.core.db import get_session
from carevault.core.errors import Forbidden, SubjectNotFound
from carevault.core.security import PATIENT
from carevault.modules.directory.schemas import PatientSummary
from carevault.modules.directory.service import DirectoryService
from carevault.modules.sessions.gate import require_grant, SubjectFrom, GateDecision

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> DirectoryService:
    return DirectoryService(session)

def _own_record_only(decision: GateDecision, subject_id: uuid.UUID):
    if decision.principal.role == PATIENT and decision.principal.user_id != subject_id:
        raise Forbidden("Patients can only view their own records")

@router.get("/patients/{patient_id}/summary", response_model=PatientSummary)
async def patient_summary(
    patient_id: uuid.UUID,
    decision: GateDecision = Depends(require_grant(SubjectFrom.path("patient_id"))),
    service: DirectoryService = Depends(svc),
):
    _own_record_only(decision, patient_id)
    return await service.patient_summary(patient_id)

@router.get("/patients/by-email/{email}/summary", response_model=PatientSummary)
async def patient_summary_by_email(
    email: str,
    decision: GateDecision = Depends(require_grant(SubjectFrom.email_path("email"))),
    service: DirectoryService = Depends(svc),
):
    subject_id = decision.subject_id or await service.resolve_email(email)
    if subject_id is None:
        raise SubjectNotFound(email=email)
    _own_record_only(decision, subject_id)
    return await service.patient_summary(subject_id)
