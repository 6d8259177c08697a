from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.core.db import get_session
from carevault.core.security import Principal, require_roles, PATIENT
from carevault.modules.audit.service import AuditService

router = APIRouter()

@router.get("/audit")
async def list_audit(
    principal: Principal = Depends(require_roles(PATIENT)),
    session: AsyncSession = Depends(get_session),
    limit: int = Query(50, ge=1, le=200),
):
    rows = await AuditService(session).list_for_subject(principal.user_id, limit=limit)
    # Return raw dicts for simplicity
    return [
        {
            "id": row.id,
            "actor_id": row.actor_id,
            "actor_role": row.actor_role,
            "action": row.action,
            "resource_type": row.resource_type,
            "resource_id": row.resource_id,
            "purpose": row.purpose,
            "success": row.success,
            "occurred_at": row.occurred_at,
        }
        for row in rows
    ]
