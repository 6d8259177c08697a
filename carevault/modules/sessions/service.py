import uuid
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Sequence
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from carevault.core.base import utcnow
from carevault.core.config import settings
from carevault.core.errors import (
    SubjectNotFound, SessionNotFound, NotSessionSubject,
    DuplicateActiveGrant, AlreadyResolved, SessionExpired,
)
from carevault.core.security import Principal, PATIENT, DOCTOR, ANONYMOUS
from carevault.modules.capability.service import CapabilityService
from carevault.modules.directory.service import DirectoryService
from carevault.modules.notifications.service import NotificationDispatcher
from carevault.modules.sessions.models import ConsentSession, PENDING, ACCEPTED
from carevault.modules.sessions.repository import ConsentSessionRepository
from carevault.modules.sessions.schemas import SessionStatusOut, SessionOut, MySessionOut

log = logging.getLogger(__name__)

ANONYMOUS_LABEL = "Anonymous requester"

def _remaining(obj: ConsentSession, now: datetime) -> int:
    return max(0, int((obj.expires_at - now).total_seconds()))


class ConsentService:
    """Consent sessions: pending -> accepted | declined, expiry is derived.

    Grants are re-read on every check; nothing here caches a decision.
    """

    def __init__(self, session: AsyncSession, dispatcher: NotificationDispatcher | None = None,
                 clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.repo = ConsentSessionRepository(session)
        self.directory = DirectoryService(session)
        self.dispatcher = dispatcher
        self.clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=settings.SESSION_WINDOW_MINUTES)

    # ---- requests ----

    async def create_request(self, requester_id: uuid.UUID | None, subject_id: uuid.UUID,
                             label: str | None = None) -> ConsentSession:
        now = self.clock()
        if not await self.directory.subject_exists(subject_id):
            raise SubjectNotFound(subject_id=str(subject_id))

        if requester_id is not None:
            existing = await self.repo.find_live(requester_id, subject_id, now)
            if existing:
                raise DuplicateActiveGrant(
                    f"You already have a {existing.status} session with this patient",
                    status=existing.status, session_id=str(existing.id),
                )
            label = label or await self.directory.doctor_display_name(requester_id) or "Doctor"
        else:
            label = label or ANONYMOUS_LABEL

        try:
            obj = await self.repo.create(
                requester_id=requester_id,
                subject_id=subject_id,
                request_label=label,
                expires_at=now + self.window,
                now=now,
            )
        except IntegrityError:
            # lost the insert race against a concurrent request for the same pair
            await self.session.rollback()
            raise DuplicateActiveGrant(status=PENDING)

        n = None
        if self.dispatcher is not None:
            n = await self.dispatcher.record(
                recipient_id=subject_id,
                recipient_role=PATIENT,
                sender_id=requester_id or ANONYMOUS,
                sender_role=DOCTOR if requester_id else ANONYMOUS,
                kind="session_request",
                title="New access request",
                body=f"{label} is requesting access to your health records.",
                payload={"session_id": str(obj.id), "expires_at": obj.expires_at.isoformat()},
            )
        await self.session.commit()
        log.info("New session request %s: %s -> patient %s", obj.id, requester_id or "anonymous", subject_id)
        if n is not None:
            await self.dispatcher.publish(n)
        return obj

    async def create_anonymous_request(self, token: str, label: str | None = None) -> ConsentSession:
        resolved = await CapabilityService(self.session, clock=self.clock).resolve(token, notify=False)
        return await self.create_request(None, resolved.subject_id, label)

    # ---- response ----

    async def respond(self, session_id: uuid.UUID, by_id: uuid.UUID, decision: str) -> ConsentSession:
        now = self.clock()
        obj = await self.repo.get(session_id, fresh=True)
        if not obj:
            raise SessionNotFound(session_id=str(session_id))
        if obj.subject_id != by_id:
            raise NotSessionSubject()
        if obj.status != PENDING:
            raise AlreadyResolved(f"Session request has already been {obj.status}", status=obj.status)
        if obj.is_expired(now):
            raise SessionExpired()

        # acceptance restarts the window from the moment access becomes usable
        new_expiry = now + self.window if decision == ACCEPTED else None
        won = await self.repo.transition(session_id, decision, now=now, expires_at=new_expiry)
        if not won:
            current = await self.repo.get(session_id, fresh=True)
            if current is None:
                raise SessionNotFound(session_id=str(session_id))
            if current.status != PENDING:
                raise AlreadyResolved(f"Session request has already been {current.status}", status=current.status)
            raise SessionExpired()

        n = None
        if self.dispatcher is not None and obj.requester_id is not None:
            accepted = decision == ACCEPTED
            n = await self.dispatcher.record(
                recipient_id=obj.requester_id,
                recipient_role=DOCTOR,
                sender_id=obj.subject_id,
                sender_role=PATIENT,
                kind="session_accepted" if accepted else "session_declined",
                title="Access request accepted" if accepted else "Access request declined",
                body=("Your access request was accepted. Access expires in "
                      f"{settings.SESSION_WINDOW_MINUTES} minutes.") if accepted
                     else "Your access request was declined.",
                payload={"session_id": str(session_id), "subject_id": str(obj.subject_id),
                         "expires_at": new_expiry.isoformat() if new_expiry else None},
            )
        await self.session.commit()
        obj = await self.repo.get(session_id, fresh=True)
        log.info("Session %s %s by patient %s", session_id, decision, by_id)
        if n is not None:
            await self.dispatcher.publish(n)
        return obj

    # ---- grant predicate ----

    async def find_grant(self, requester_id: uuid.UUID, subject_id: uuid.UUID) -> ConsentSession | None:
        return await self.repo.find_grant(requester_id, subject_id, self.clock())

    async def is_granted(self, requester_id: uuid.UUID, subject_id: uuid.UUID) -> bool:
        return await self.find_grant(requester_id, subject_id) is not None

    async def sweep_expired(self) -> int:
        n = await self.repo.sweep_expired(self.clock())
        await self.session.commit()
        if n:
            log.info("Cleaned up %d expired sessions", n)
        return n

    # ---- views ----

    async def status(self, session_id: uuid.UUID, caller: Principal) -> SessionStatusOut:
        now = self.clock()
        obj = await self.repo.get(session_id, fresh=True)
        # outsiders get the same answer as for a session that does not exist
        if not obj or caller.user_id not in (obj.requester_id, obj.subject_id):
            raise SessionNotFound(session_id=str(session_id))
        return SessionStatusOut(
            **SessionOut.model_validate(obj).model_dump(),
            is_expired=obj.is_expired(now),
            is_active=obj.is_active(now),
            time_remaining_seconds=_remaining(obj, now),
        )

    async def pending_for_subject(self, subject_id: uuid.UUID) -> Sequence[ConsentSession]:
        return await self.repo.list_pending_for_subject(subject_id, self.clock())

    async def active_for(self, caller: Principal) -> Sequence[ConsentSession]:
        now = self.clock()
        if caller.role == DOCTOR:
            return await self.repo.list_active(now, requester_id=caller.user_id)
        return await self.repo.list_active(now, subject_id=caller.user_id)

    async def mine(self, requester_id: uuid.UUID) -> list[MySessionOut]:
        now = self.clock()
        sessions = await self.repo.list_active(now, requester_id=requester_id)
        patients = await self.directory.patient_summaries([s.subject_id for s in sessions])
        return [
            MySessionOut(
                session_id=s.id,
                patient=patients[s.subject_id],
                expires_at=s.expires_at,
                time_remaining_seconds=_remaining(s, now),
                responded_at=s.responded_at,
            )
            for s in sessions
            if s.subject_id in patients
        ]


# ---- Background sweeper ----

async def run_session_sweeper(session_factory: async_sessionmaker[AsyncSession], interval_seconds: float | None = None):
    sweeper_log = logging.getLogger("sessions.sweeper")
    interval = interval_seconds or settings.SESSION_SWEEP_INTERVAL_SECONDS
    sweeper_log.info("Session sweeper started (every %.0fs)", interval)
    try:
        while True:
            async with session_factory() as session:
                try:
                    await ConsentService(session).sweep_expired()
                    n = await CapabilityService(session).expire_lapsed()
                    if n:
                        sweeper_log.info("Expired %d lapsed capability tokens", n)
                except Exception:
                    # retried on the next tick
                    sweeper_log.exception("Sweep iteration failed")
                    await session.rollback()
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        sweeper_log.info("Session sweeper cancelled; shutting down")
        raise
