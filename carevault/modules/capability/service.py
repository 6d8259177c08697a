import uuid
import logging
from datetime import datetime, timedelta
from typing import Callable
from urllib.parse import quote
from jose import jwt, JWTError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.core.base import utcnow
from carevault.core.config import settings
from carevault.core.errors import InvalidOrExpired, SubjectNotFound
from carevault.core.security import PATIENT, ANONYMOUS
from carevault.modules.capability.models import CapabilityToken, ACTIVE
from carevault.modules.capability.repository import CapabilityRepository
from carevault.modules.capability.schemas import IssuedCapability, ResolvedCapability, CapabilityValidateOut
from carevault.modules.directory.service import DirectoryService
from carevault.modules.notifications.service import NotificationDispatcher

log = logging.getLogger(__name__)

TOKEN_TYPE = "vault_share"
_ISSUE_ATTEMPTS = 3


class CapabilityService:
    """Anonymous, single-subject, read-only share tokens (the QR flow).

    A token is honoured only if its signature and expiry verify AND the
    persisted row is still active for the same subject. The subject id inside
    the payload is never used without that second check.
    """

    def __init__(self, session: AsyncSession, dispatcher: NotificationDispatcher | None = None,
                 clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.repo = CapabilityRepository(session)
        self.directory = DirectoryService(session)
        self.dispatcher = dispatcher
        self.clock = clock

    # ---- signing ----

    def _sign(self, subject_id: uuid.UUID, jti: str, expires_at: datetime) -> str:
        claims = {
            "sub": str(subject_id),
            "role": ANONYMOUS,
            "typ": TOKEN_TYPE,
            "jti": jti,
            "iat": int(self.clock().timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(claims, settings.capability_secret, algorithm=settings.JWT_ALG)

    def _verify(self, token: str) -> dict:
        try:
            # expiry is checked below against the service clock
            claims = jwt.decode(token, settings.capability_secret, algorithms=[settings.JWT_ALG],
                                options={"verify_exp": False, "verify_aud": False})
        except JWTError:
            raise InvalidOrExpired(reason="jwt_invalid_or_expired")
        if claims.get("typ") != TOKEN_TYPE:
            raise InvalidOrExpired(reason="jwt_invalid_or_expired")
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self.clock().timestamp():
            raise InvalidOrExpired(reason="jwt_invalid_or_expired")
        return claims

    # ---- operations ----

    def share_url(self, subject_id: uuid.UUID, token: str) -> str:
        return f"{settings.SHARE_BASE_URL.rstrip('/')}/patient-details/{subject_id}?token={quote(token, safe='')}"

    async def issue(self, subject_id: uuid.UUID) -> IssuedCapability:
        if not await self.directory.subject_exists(subject_id):
            raise SubjectNotFound(subject_id=str(subject_id))
        for attempt in range(1, _ISSUE_ATTEMPTS + 1):
            now = self.clock()
            expires_at = now + timedelta(minutes=settings.CAPABILITY_TTL_MINUTES)
            jti = uuid.uuid4().hex
            token = self._sign(subject_id, jti, expires_at)
            try:
                expired = await self.repo.expire_active(subject_id)
                await self.repo.create(subject_id=subject_id, token=token, jti=jti, expires_at=expires_at)
                await self.session.commit()
            except IntegrityError:
                # a concurrent issue for the same subject won the live slot; retire it and retry
                await self.session.rollback()
                log.info("Concurrent capability issue for %s (attempt %d)", subject_id, attempt)
                continue
            log.info("Issued capability token for %s (retired %d)", subject_id, expired)
            return IssuedCapability(token=token, share_url=self.share_url(subject_id, token),
                                    expires_at=expires_at, expired=expired)
        raise RuntimeError(f"could not issue capability token for {subject_id}")

    async def _load_active(self, token: str) -> tuple[dict, CapabilityToken]:
        if not token:
            raise InvalidOrExpired(reason="missing_token")
        claims = self._verify(token)
        row = await self.repo.get_by_token(token)
        if (
            row is None
            or row.status != ACTIVE
            or row.expires_at <= self.clock()
            or str(row.subject_id) != claims.get("sub")
            or row.jti != claims.get("jti")
        ):
            raise InvalidOrExpired(reason="not_active")
        return claims, row

    async def resolve(self, token: str, *, notify: bool = True) -> ResolvedCapability:
        """``notify=False`` only checks the token: the open is not counted and
        the subject's first-scan notice stays pending for a real resolution."""
        _, row = await self._load_active(token)
        if not notify:
            return ResolvedCapability(subject_id=row.subject_id, expires_at=row.expires_at)
        now = self.clock()
        first = await self.repo.mark_resolved(row, now)
        n = None
        if first and self.dispatcher is not None:
            n = await self.dispatcher.record(
                recipient_id=row.subject_id,
                recipient_role=PATIENT,
                sender_id=ANONYMOUS,
                sender_role=ANONYMOUS,
                kind="qr_scan",
                title="Your QR code was scanned",
                body="Someone opened your shared health summary.",
                payload={"token_expires_at": row.expires_at.isoformat()},
            )
        await self.session.commit()
        if n is not None:
            await self.dispatcher.publish(n)
        return ResolvedCapability(subject_id=row.subject_id, expires_at=row.expires_at)

    async def validate(self, token: str | None) -> CapabilityValidateOut:
        try:
            _, row = await self._load_active(token or "")
        except InvalidOrExpired as e:
            return CapabilityValidateOut(valid=False, reason=e.context.get("reason"))
        return CapabilityValidateOut(valid=True, expires_at=row.expires_at, subject_id=row.subject_id)

    async def invalidate(self, subject_id: uuid.UUID) -> int:
        n = await self.repo.expire_active(subject_id)
        await self.session.commit()
        log.info("Invalidated %d capability tokens for %s", n, subject_id)
        return n

    async def rotate(self, subject_id: uuid.UUID) -> IssuedCapability:
        expired = await self.invalidate(subject_id)
        issued = await self.issue(subject_id)
        issued.expired += expired
        return issued

    async def expire_lapsed(self) -> int:
        n = await self.repo.expire_lapsed(self.clock())
        await self.session.commit()
        return n
