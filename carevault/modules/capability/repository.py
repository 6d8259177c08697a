import uuid
from datetime import datetime
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.modules.capability.models import CapabilityToken, ACTIVE, EXPIRED

class CapabilityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **data) -> CapabilityToken:
        obj = CapabilityToken(status=ACTIVE, resolve_count=0, live_subject_id=data["subject_id"], **data)
        self.session.add(obj)
        await self.session.flush()  # IntegrityError if the subject still has a live token
        return obj

    async def get_by_token(self, token: str) -> CapabilityToken | None:
        q = select(CapabilityToken).where(CapabilityToken.token == token)
        # status flips are bulk updates; never trust a cached row here
        res = await self.session.execute(q.execution_options(populate_existing=True))
        return res.scalar_one_or_none()

    async def expire_active(self, subject_id: uuid.UUID) -> int:
        res = await self.session.execute(
            update(CapabilityToken)
            .where(CapabilityToken.subject_id == subject_id, CapabilityToken.status == ACTIVE)
            .values(status=EXPIRED, live_subject_id=None)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount or 0

    async def expire_lapsed(self, at: datetime) -> int:
        res = await self.session.execute(
            update(CapabilityToken)
            .where(CapabilityToken.status == ACTIVE, CapabilityToken.expires_at <= at)
            .values(status=EXPIRED, live_subject_id=None)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount or 0

    async def mark_resolved(self, obj: CapabilityToken, when: datetime) -> bool:
        """Returns True on the first resolution of this token."""
        first = not obj.resolve_count
        obj.resolve_count = (obj.resolve_count or 0) + 1
        obj.last_resolved_at = when
        await self.session.flush()
        return first
