import uuid
from typing import Sequence
from fastapi import Request
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.modules.audit.models import AuditEvent

class AuditService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(self,
                  actor_id: uuid.UUID | str,
                  actor_role: str,
                  action: str,
                  resource_type: str,
                  resource_id: str,
                  purpose: str | None = None,
                  request: Request | None = None,
                  success: bool = True) -> None:
        ev = AuditEvent(
            actor_id=str(actor_id),
            actor_role=actor_role,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            purpose=purpose,
            success=success,
            client_ip=(request.client.host if request and request.client else None),
            user_agent=(request.headers.get("user-agent")[:256] if request and request.headers.get("user-agent") else None),
        )
        self.session.add(ev)
        await self.session.commit()

    async def list_for_subject(self, subject_id: uuid.UUID, limit: int = 50) -> Sequence[AuditEvent]:
        q = select(AuditEvent).where(
            AuditEvent.resource_id == str(subject_id),
        ).order_by(desc(AuditEvent.occurred_at)).limit(limit)
        res = await self.session.execute(q)
        return res.scalars().all()
