import uuid
from datetime import datetime, timedelta
from typing import Sequence
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.modules.notifications.models import (
    Notification, PUSH_PENDING, PUSH_SENT, PUSH_SKIPPED, PUSH_FAILED,
)

class NotificationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **data) -> Notification:
        obj = Notification(**data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, notification_id: uuid.UUID) -> Notification | None:
        res = await self.session.execute(select(Notification).where(Notification.id == notification_id))
        return res.scalar_one_or_none()

    async def list_for(self, recipient_id: uuid.UUID, recipient_role: str, *, unread_only: bool = False,
                       limit: int = 50, offset: int = 0) -> Sequence[Notification]:
        q = select(Notification).where(
            Notification.recipient_id == recipient_id,
            Notification.recipient_role == recipient_role,
        )
        if unread_only:
            q = q.where(Notification.read.is_(False))
        q = q.order_by(Notification.created_at.desc()).limit(limit).offset(offset)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def unread_count(self, recipient_id: uuid.UUID, recipient_role: str) -> int:
        q = select(func.count()).select_from(Notification).where(
            Notification.recipient_id == recipient_id,
            Notification.recipient_role == recipient_role,
            Notification.read.is_(False),
        )
        res = await self.session.execute(q)
        return int(res.scalar_one())

    async def mark_read(self, notification_id: uuid.UUID, recipient_id: uuid.UUID, when: datetime) -> Notification | None:
        obj = await self.get(notification_id)
        if not obj or obj.recipient_id != recipient_id:
            return None
        if not obj.read:
            obj.read = True
            obj.read_at = when
            await self.session.flush()
        return obj

    async def mark_all_read(self, recipient_id: uuid.UUID, recipient_role: str, when: datetime) -> int:
        res = await self.session.execute(
            update(Notification)
            .where(
                Notification.recipient_id == recipient_id,
                Notification.recipient_role == recipient_role,
                Notification.read.is_(False),
            )
            .values(read=True, read_at=when)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount or 0

    # ---- push bookkeeping ----

    async def due_for_push(self, at: datetime, limit: int = 50) -> list[uuid.UUID]:
        q = (
            select(Notification.id)
            .where(
                Notification.push_status == PUSH_PENDING,
                Notification.push_next_attempt_at <= at,
            )
            .order_by(Notification.push_next_attempt_at.asc())
            .limit(limit)
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def mark_push_sent(self, obj: Notification, message_id: str | None):
        obj.push_status = PUSH_SENT
        obj.push_attempts = (obj.push_attempts or 0) + 1
        obj.push_message_id = message_id
        obj.push_error = None
        obj.push_next_attempt_at = None
        await self.session.flush()

    async def mark_push_skipped(self, obj: Notification):
        obj.push_status = PUSH_SKIPPED
        obj.push_next_attempt_at = None
        await self.session.flush()

    async def mark_push_failed(self, obj: Notification, error: str, *, now: datetime, max_attempts: int):
        obj.push_attempts = (obj.push_attempts or 0) + 1
        obj.push_error = error[:2000]  # truncate
        if obj.push_attempts >= max_attempts:
            obj.push_status = PUSH_FAILED
            obj.push_next_attempt_at = None
        else:
            obj.push_status = PUSH_PENDING  # retry
            backoff = min(60, 2 ** (obj.push_attempts - 1))  # 1,2,4,8,16,32,60s
            obj.push_next_attempt_at = now + timedelta(seconds=backoff)
        await self.session.flush()
