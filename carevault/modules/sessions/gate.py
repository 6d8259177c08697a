"""Access gate for routes that expose a subject's data.

A route declares where the subject id comes from; the gate lets the subject
and ungated roles through and demands a live accepted consent session from
everyone else. The grant is looked up on every request.
"""
import uuid
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Literal
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.api.deps import get_clock
from carevault.core.config import settings
from carevault.core.db import get_session
from carevault.core.errors import GrantCheckTimeout, NoActiveGrant, SubjectNotFound
from carevault.core.security import Principal, get_principal, PATIENT
from carevault.modules.audit.service import AuditService
from carevault.modules.directory.service import DirectoryService
from carevault.modules.sessions.models import ConsentSession
from carevault.modules.sessions.service import ConsentService

log = logging.getLogger(__name__)


def _as_uuid(value) -> uuid.UUID | None:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class SubjectSource:
    kind: Literal["path", "query", "body", "email_path"]
    name: str

    async def extract(self, request: Request, session: AsyncSession) -> uuid.UUID | None:
        if self.kind == "path":
            return _as_uuid(request.path_params.get(self.name))
        if self.kind == "query":
            return _as_uuid(request.query_params.get(self.name))
        if self.kind == "body":
            if request.method in ("GET", "HEAD", "DELETE"):
                return None
            try:
                body = await request.json()
            except ValueError:
                return None
            return _as_uuid(body.get(self.name)) if isinstance(body, dict) else None
        # email_path: indirect lookup through the directory
        email = request.path_params.get(self.name)
        if not email:
            return None
        subject_id = await DirectoryService(session).resolve_email(email)
        if subject_id is None:
            raise SubjectNotFound(email=email)
        return subject_id


class SubjectFrom:
    @staticmethod
    def path(name: str) -> SubjectSource:
        return SubjectSource("path", name)

    @staticmethod
    def query(name: str) -> SubjectSource:
        return SubjectSource("query", name)

    @staticmethod
    def body(name: str) -> SubjectSource:
        return SubjectSource("body", name)

    @staticmethod
    def email_path(name: str) -> SubjectSource:
        return SubjectSource("email_path", name)


DEFAULT_SOURCES: tuple[SubjectSource, ...] = (
    SubjectFrom.path("patient_id"),
    SubjectFrom.path("subject_id"),
    SubjectFrom.path("user_id"),
    SubjectFrom.path("id"),
    SubjectFrom.query("patient_id"),
    SubjectFrom.query("subject_id"),
    SubjectFrom.body("patient_id"),
    SubjectFrom.body("subject_id"),
)


@dataclass
class GateDecision:
    allowed: bool
    reason: str  # self | ungated_role | no_subject | grant
    principal: Principal
    subject_id: uuid.UUID | None = None
    grant: ConsentSession | None = None


async def resolve_subject(sources, request: Request, session: AsyncSession) -> uuid.UUID | None:
    for source in sources:
        subject_id = await source.extract(request, session)
        if subject_id is not None:
            return subject_id
    return None


async def _lookup_grant(consent: ConsentService, principal: Principal, subject_id: uuid.UUID) -> ConsentSession | None:
    async def lookup():
        await consent.sweep_expired()
        return await consent.find_grant(principal.user_id, subject_id)

    try:
        return await asyncio.wait_for(lookup(), timeout=settings.DB_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        # fail closed: no answer is never read as a grant
        log.warning("Gate: grant check for %s on patient %s timed out after %.1fs",
                    principal.user_id, subject_id, settings.DB_TIMEOUT_SECONDS)
        raise GrantCheckTimeout(subject_id=str(subject_id))


def require_grant(*sources: SubjectSource, on_missing: Literal["allow", "deny"] = "allow"):
    """Dependency factory. ``on_missing="deny"`` rejects gated callers when no
    subject can be resolved instead of letting them through."""
    sources = sources or DEFAULT_SOURCES

    async def dep(
        request: Request,
        principal: Principal = Depends(get_principal),
        session: AsyncSession = Depends(get_session),
        clock: Callable[[], datetime] = Depends(get_clock),
    ) -> GateDecision:
        if principal.role == PATIENT:
            return GateDecision(True, "self", principal)
        if principal.role not in settings.GATED_ROLES:
            return GateDecision(True, "ungated_role", principal)

        audit = AuditService(session)
        subject_id = await resolve_subject(sources, request, session)
        if subject_id is None:
            if on_missing == "deny":
                await audit.log(principal.user_id, principal.role, "deny", "patient", "-",
                                purpose="no_subject", request=request, success=False)
                raise NoActiveGrant("Access denied: no patient could be identified for this request")
            log.debug("Gate: no subject on %s %s; passing through", request.method, request.url.path)
            await audit.log(principal.user_id, principal.role, "read", "patient", "-",
                            purpose="no_subject", request=request)
            return GateDecision(True, "no_subject", principal)

        grant = await _lookup_grant(ConsentService(session, clock=clock), principal, subject_id)
        if grant is None:
            await audit.log(principal.user_id, principal.role, "deny", "patient", str(subject_id),
                            purpose="consent_session", request=request, success=False)
            log.info("Gate: %s %s denied for patient %s", principal.role, principal.user_id, subject_id)
            raise NoActiveGrant(subject_id=str(subject_id))

        await audit.log(principal.user_id, principal.role, "read", "patient", str(subject_id),
                        purpose="consent_session", request=request)
        request.state.grant = grant
        return GateDecision(True, "grant", principal, subject_id, grant)

    return dep
