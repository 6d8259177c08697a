import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.core.errors import SubjectNotFound
from carevault.modules.directory.repository import DirectoryRepository
from carevault.modules.directory.schemas import PatientSummary

class DirectoryService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = DirectoryRepository(session)

    async def subject_exists(self, subject_id: uuid.UUID) -> bool:
        return await self.repo.get_patient(subject_id) is not None

    async def resolve_email(self, email: str) -> uuid.UUID | None:
        return await self.repo.patient_id_by_email(email)

    async def patient_summary(self, subject_id: uuid.UUID) -> PatientSummary:
        p = await self.repo.get_patient(subject_id)
        if not p:
            raise SubjectNotFound(subject_id=str(subject_id))
        return PatientSummary.model_validate(p)

    async def patient_summaries(self, ids: list[uuid.UUID]) -> dict[uuid.UUID, PatientSummary]:
        found = await self.repo.patients_by_ids(ids)
        return {k: PatientSummary.model_validate(v) for k, v in found.items()}

    async def doctor_display_name(self, doctor_id: uuid.UUID) -> str | None:
        d = await self.repo.get_doctor(doctor_id)
        return f"Dr. {d.name}" if d else None

    async def push_address(self, recipient_id: uuid.UUID, role: str) -> str | None:
        account = await self.repo.get_account(recipient_id, role)
        return account.push_token if account else None

    async def set_push_address(self, user_id: uuid.UUID, role: str, token: str) -> bool:
        account = await self.repo.get_account(user_id, role)
        if not account:
            return False
        account.push_token = token
        await self.session.commit()
        return True

    async def active_ids(self, role: str, ids: list[uuid.UUID] | None = None) -> list[uuid.UUID]:
        return await self.repo.active_account_ids(role, ids)
