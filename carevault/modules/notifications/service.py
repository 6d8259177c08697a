import uuid
import asyncio
import logging
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.core.config import settings
from carevault.core.errors import LedgerWriteTimeout, NotificationNotFound
from carevault.modules.notifications.models import Notification
from carevault.modules.notifications.repository import NotificationRepository
from carevault.modules.notifications.schemas import NotificationOut
from carevault.modules.notifications.live import LiveConnectionRegistry, live_message
from carevault.modules.notifications.push import PushDelivery, first_attempt_deadline

log = logging.getLogger(__name__)

def _now(): return datetime.now(timezone.utc)


class NotificationDispatcher:
    """Ledger write, then live fanout, then push; in that order.

    ``record`` only flushes so callers can commit it together with the state
    change that caused it. ``publish`` runs after that commit and never raises:
    the ledger row is authoritative whether or not anyone saw it live.
    """

    def __init__(self, session: AsyncSession, live: LiveConnectionRegistry, delivery: PushDelivery | None = None):
        self.session = session
        self.repo = NotificationRepository(session)
        self.live = live
        self.delivery = delivery

    async def record(self, *, recipient_id: uuid.UUID, recipient_role: str, sender_id: uuid.UUID | str,
                     sender_role: str, kind: str, title: str, body: str, payload: dict | None = None) -> Notification:
        now = _now()
        write = self.repo.create(
            recipient_id=recipient_id,
            recipient_role=recipient_role,
            sender_id=str(sender_id),
            sender_role=sender_role,
            kind=kind,
            title=title,
            body=body,
            payload=payload or {},
            read=False,
            created_at=now,
            push_next_attempt_at=first_attempt_deadline(now),
        )
        try:
            return await asyncio.wait_for(write, timeout=settings.DB_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            log.warning("Ledger write for %s %s timed out after %.1fs", recipient_role, recipient_id,
                        settings.DB_TIMEOUT_SECONDS)
            raise LedgerWriteTimeout(recipient_id=str(recipient_id))

    async def publish(self, n: Notification) -> int:
        out = NotificationOut.model_validate(n).model_dump(mode="json")
        delivered = 0
        try:
            if self.live.count(n.recipient_id, n.recipient_role):
                delivered = await self.live.broadcast(
                    n.recipient_id, n.recipient_role, live_message("new_notification", notification=out)
                )
                count = await self.repo.unread_count(n.recipient_id, n.recipient_role)
                await self.live.broadcast(n.recipient_id, n.recipient_role, live_message("unread_count", count=count))
        except Exception:
            log.exception("Live fanout failed for notification %s", n.id)
        if self.delivery is not None:
            self.delivery.dispatch(n.id, event=out)
        return delivered

    async def notify(self, **event) -> Notification:
        n = await self.record(**event)
        await self.session.commit()
        await self.publish(n)
        return n

    async def notify_many(self, recipient_ids: list[uuid.UUID], recipient_role: str, **event) -> list[Notification]:
        """One ledger row per recipient, committed together, then each published."""
        rows = [await self.record(recipient_id=rid, recipient_role=recipient_role, **event) for rid in recipient_ids]
        await self.session.commit()
        for n in rows:
            await self.publish(n)
        log.info("Recorded %d %s notifications for %d %s recipients",
                 len(rows), event.get("kind"), len(recipient_ids), recipient_role)
        return rows

    async def notify_role(self, recipient_ids: list[uuid.UUID], recipient_role: str, **event) -> list[Notification]:
        """Announcement to every account of a role.

        Rows are written per account exactly as in ``notify_many``; live
        clients get one role-wide ``announcement`` frame instead of a
        per-recipient message, and push still goes out per row.
        """
        rows = [await self.record(recipient_id=rid, recipient_role=recipient_role, **event) for rid in recipient_ids]
        await self.session.commit()
        try:
            await self.live.broadcast(None, recipient_role, live_message(
                "announcement", kind=event.get("kind"), title=event.get("title"),
                body=event.get("body"), payload=event.get("payload") or {},
            ))
        except Exception:
            log.exception("Role-wide live fanout failed for %s", recipient_role)
        if self.delivery is not None:
            for n in rows:
                self.delivery.dispatch(n.id, event=NotificationOut.model_validate(n).model_dump(mode="json"))
        log.info("Announcement recorded for %d %s accounts", len(rows), recipient_role)
        return rows


class NotificationService:
    def __init__(self, session: AsyncSession, live: LiveConnectionRegistry | None = None):
        self.session = session
        self.repo = NotificationRepository(session)
        self.live = live

    async def list_for(self, recipient_id: uuid.UUID, recipient_role: str, *, unread_only: bool = False,
                       limit: int = 50, offset: int = 0):
        return await self.repo.list_for(recipient_id, recipient_role, unread_only=unread_only, limit=limit, offset=offset)

    async def unread_count(self, recipient_id: uuid.UUID, recipient_role: str) -> int:
        return await self.repo.unread_count(recipient_id, recipient_role)

    async def mark_read(self, notification_id: uuid.UUID, recipient_id: uuid.UUID, recipient_role: str) -> Notification:
        obj = await self.repo.mark_read(notification_id, recipient_id, _now())
        if not obj:
            # someone else's notification is reported exactly like a missing one
            raise NotificationNotFound(notification_id=str(notification_id))
        await self.session.commit()
        await self._push_unread_count(recipient_id, recipient_role)
        return obj

    async def mark_all_read(self, recipient_id: uuid.UUID, recipient_role: str) -> int:
        n = await self.repo.mark_all_read(recipient_id, recipient_role, _now())
        await self.session.commit()
        if n:
            await self._push_unread_count(recipient_id, recipient_role)
        return n

    async def _push_unread_count(self, recipient_id: uuid.UUID, recipient_role: str):
        if self.live is None or not self.live.count(recipient_id, recipient_role):
            return
        count = await self.repo.unread_count(recipient_id, recipient_role)
        await self.live.broadcast(recipient_id, recipient_role, live_message("unread_count", count=count))
