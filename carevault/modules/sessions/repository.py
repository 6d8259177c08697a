import uuid
from datetime import datetime
from typing import Sequence
from sqlalchemy import select, update, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.modules.sessions.models import (
    ConsentSession, PENDING, ACCEPTED, DECLINED, LIVE_STATUSES, active_key_for,
)

class ConsentSessionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, *, requester_id: uuid.UUID | None, subject_id: uuid.UUID,
                     request_label: str, expires_at: datetime, now: datetime) -> ConsentSession:
        # Insert-if-absent: the unique active_key rejects a second live session
        # for the pair. Lapsed rows still holding the key are cleared first.
        key = active_key_for(requester_id, subject_id)
        if key is not None:
            await self.session.execute(
                delete(ConsentSession)
                .where(ConsentSession.active_key == key, ConsentSession.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
        obj = ConsentSession(
            requester_id=requester_id,
            subject_id=subject_id,
            status=PENDING,
            expires_at=expires_at,
            request_label=request_label,
            active_key=key,
        )
        self.session.add(obj)
        await self.session.flush()  # raises IntegrityError on a duplicate live pair
        return obj

    async def get(self, session_id: uuid.UUID, *, fresh: bool = False) -> ConsentSession | None:
        q = select(ConsentSession).where(ConsentSession.id == session_id)
        if fresh:
            q = q.execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def find_live(self, requester_id: uuid.UUID, subject_id: uuid.UUID, at: datetime) -> ConsentSession | None:
        q = select(ConsentSession).where(
            ConsentSession.requester_id == requester_id,
            ConsentSession.subject_id == subject_id,
            ConsentSession.status.in_(LIVE_STATUSES),
            ConsentSession.expires_at > at,
        ).limit(1)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def find_grant(self, requester_id: uuid.UUID, subject_id: uuid.UUID, at: datetime) -> ConsentSession | None:
        q = select(ConsentSession).where(
            ConsentSession.requester_id == requester_id,
            ConsentSession.subject_id == subject_id,
            ConsentSession.status == ACCEPTED,
            ConsentSession.expires_at > at,
        ).order_by(ConsentSession.expires_at.desc()).limit(1)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def transition(self, session_id: uuid.UUID, decision: str, *, now: datetime,
                         expires_at: datetime | None) -> bool:
        """Conditional pending -> decision. Returns False when another writer won
        or the window lapsed; exactly one concurrent caller sees True."""
        values = {"status": decision, "responded_at": now, "updated_at": now}
        if expires_at is not None:
            values["expires_at"] = expires_at
        if decision == DECLINED:
            values["active_key"] = None
        stmt = (
            update(ConsentSession)
            .where(and_(
                ConsentSession.id == session_id,
                ConsentSession.status == PENDING,
                ConsentSession.expires_at > now,
            ))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return res.rowcount == 1

    async def sweep_expired(self, at: datetime) -> int:
        res = await self.session.execute(
            delete(ConsentSession)
            .where(ConsentSession.expires_at <= at)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount or 0

    async def list_pending_for_subject(self, subject_id: uuid.UUID, at: datetime) -> Sequence[ConsentSession]:
        q = select(ConsentSession).where(
            ConsentSession.subject_id == subject_id,
            ConsentSession.status == PENDING,
            ConsentSession.expires_at > at,
        ).order_by(ConsentSession.created_at.desc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_active(self, at: datetime, *, requester_id: uuid.UUID | None = None,
                          subject_id: uuid.UUID | None = None) -> Sequence[ConsentSession]:
        q = select(ConsentSession).where(
            ConsentSession.status == ACCEPTED,
            ConsentSession.expires_at > at,
        )
        if requester_id is not None:
            q = q.where(ConsentSession.requester_id == requester_id)
        if subject_id is not None:
            q = q.where(ConsentSession.subject_id == subject_id)
        res = await self.session.execute(q.order_by(ConsentSession.created_at.desc()))
        return res.scalars().all()
