"""Out-of-band push delivery for ledger records.

Delivery runs in tasks detached from the request that recorded the
notification, each bounded by PUSH_TIMEOUT_SECONDS. Failed attempts are
rescheduled on the ledger row and picked up again by ``run_relay`` until
PUSH_MAX_ATTEMPTS, which gives at-least-once semantics for recipients with a
registered device.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carevault.core.config import settings
from carevault.modules.directory.service import DirectoryService
from carevault.modules.notifications.models import PUSH_PENDING, PUSH_SENT, PUSH_SKIPPED, PUSH_FAILED
from carevault.modules.notifications.repository import NotificationRepository
from carevault.platform.ports.event_bus import EventBusPort
from carevault.platform.ports.push import PushPort

log = logging.getLogger("notifications.push")

TOPIC = "vault.notifications"

def _now() -> datetime:
    return datetime.now(timezone.utc)

def first_attempt_deadline(now: datetime) -> datetime:
    # the relay leaves a fresh record alone while its inline attempt is in flight
    return now + timedelta(seconds=settings.PUSH_TIMEOUT_SECONDS * 2)


class PushDelivery:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], push: PushPort,
                 bus: EventBusPort | None = None, *, timeout: float | None = None,
                 max_attempts: int | None = None):
        self.session_factory = session_factory
        self.push = push
        self.bus = bus
        self.timeout = timeout if timeout is not None else settings.PUSH_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.PUSH_MAX_ATTEMPTS
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, notification_id: uuid.UUID, event: dict | None = None) -> asyncio.Task:
        task = asyncio.create_task(self._run(notification_id, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        while self._tasks:
            pending = list(self._tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.difference_update(pending)

    async def _run(self, notification_id: uuid.UUID, event: dict | None):
        if event is not None and self.bus is not None:
            try:
                await asyncio.wait_for(
                    self.bus.publish(topic=TOPIC, key=str(event.get("recipient_id", "-")), value=event),
                    timeout=self.timeout,
                )
            except Exception:
                log.exception("Event bus publish failed for notification %s", notification_id)
        try:
            await self.deliver(notification_id)
        except Exception:
            log.exception("Push delivery crashed for notification %s", notification_id)

    async def deliver(self, notification_id: uuid.UUID) -> str | None:
        async with self.session_factory() as session:
            repo = NotificationRepository(session)
            n = await repo.get(notification_id)
            if n is None or n.push_status != PUSH_PENDING:
                return n.push_status if n else None

            address = await DirectoryService(session).push_address(n.recipient_id, n.recipient_role)
            if not address:
                log.debug("No push address for %s %s; skipping", n.recipient_role, n.recipient_id)
                await repo.mark_push_skipped(n)
                await session.commit()
                return PUSH_SKIPPED

            data = {"notification_id": str(n.id), "kind": n.kind, **(n.payload or {})}
            try:
                message_id = await asyncio.wait_for(self.push.send(address, n.title, n.body, data), timeout=self.timeout)
            except asyncio.TimeoutError:
                log.warning("Push timed out after %.1fs for notification %s", self.timeout, n.id)
                await repo.mark_push_failed(n, "timeout", now=_now(), max_attempts=self.max_attempts)
            except Exception as ex:
                log.warning("Push failed for notification %s: %s", n.id, ex)
                await repo.mark_push_failed(n, str(ex) or ex.__class__.__name__, now=_now(), max_attempts=self.max_attempts)
            else:
                await repo.mark_push_sent(n, message_id)
            status = n.push_status
            await session.commit()
        if status == PUSH_FAILED:
            log.error("Giving up on push for notification %s after %d attempts", notification_id, self.max_attempts)
        elif status == PUSH_SENT:
            log.info("Push sent for notification %s", notification_id)
        return status

    async def retry_due(self, limit: int = 50) -> int:
        async with self.session_factory() as session:
            due = await NotificationRepository(session).due_for_push(_now(), limit=limit)
        for notification_id in due:
            await self.deliver(notification_id)
        return len(due)


# ---- Background relay ----

async def run_push_relay(delivery: PushDelivery, poll_interval_seconds: float | None = None):
    interval = poll_interval_seconds or settings.PUSH_RELAY_INTERVAL_SECONDS
    log.info("Push relay started with push=%s", delivery.push.__class__.__name__)
    try:
        while True:
            try:
                n = await delivery.retry_due()
                if n:
                    log.info("Push relay retried %d notifications", n)
            except Exception:
                log.exception("Push relay iteration failed")
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        log.info("Push relay cancelled; shutting down")
        raise
