import uuid
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.core.security import DOCTOR
from carevault.modules.directory.models import Patient, Doctor

class DirectoryRepository:
    """Narrow read contract over profile storage owned by account management."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_patient(self, patient_id: uuid.UUID) -> Patient | None:
        q = select(Patient).where(Patient.id == patient_id, Patient.active.is_(True))
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_doctor(self, doctor_id: uuid.UUID) -> Doctor | None:
        q = select(Doctor).where(Doctor.id == doctor_id, Doctor.active.is_(True))
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def patient_id_by_email(self, email: str) -> uuid.UUID | None:
        # stored addresses keep whatever case account management wrote
        q = select(Patient.id).where(func.lower(Patient.email) == email.strip().lower(), Patient.active.is_(True))
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def patients_by_ids(self, ids: list[uuid.UUID]) -> dict[uuid.UUID, Patient]:
        if not ids:
            return {}
        res = await self.session.execute(select(Patient).where(Patient.id.in_(ids)))
        return {p.id: p for p in res.scalars().all()}

    async def active_account_ids(self, role: str, ids: list[uuid.UUID] | None = None) -> list[uuid.UUID]:
        model = Doctor if role == DOCTOR else Patient
        q = select(model.id).where(model.active.is_(True))
        if ids is not None:
            if not ids:
                return []
            q = q.where(model.id.in_(ids))
        res = await self.session.execute(q.order_by(model.created_at.asc()))
        return list(res.scalars().all())

    async def get_account(self, user_id: uuid.UUID, role: str) -> Patient | Doctor | None:
        if role == DOCTOR:
            return await self.get_doctor(user_id)
        return await self.get_patient(user_id)
