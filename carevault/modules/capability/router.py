from datetime import datetime
from typing import Callable
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.api.deps import get_dispatcher, get_clock
from carevault.core.db import get_session
from carevault.core.security import require_roles, Principal, PATIENT, ANONYMOUS
from carevault.modules.audit.service import AuditService
from carevault.modules.capability.schemas import (
    IssuedCapability, CapabilityResolveOut, CapabilityValidateOut, InvalidateOut,
)
from carevault.modules.capability.service import CapabilityService
from carevault.modules.directory.service import DirectoryService
from carevault.modules.notifications.service import NotificationDispatcher

router = APIRouter()

def svc(
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> CapabilityService:
    return CapabilityService(session, dispatcher, clock=clock)

@router.post("/capability/issue", response_model=IssuedCapability, status_code=201)
async def issue(
    principal: Principal = Depends(require_roles(PATIENT)),
    service: CapabilityService = Depends(svc),
):
    return await service.issue(principal.user_id)

@router.post("/capability/rotate", response_model=IssuedCapability, status_code=201)
async def rotate(
    principal: Principal = Depends(require_roles(PATIENT)),
    service: CapabilityService = Depends(svc),
):
    return await service.rotate(principal.user_id)

@router.post("/capability/invalidate", response_model=InvalidateOut)
async def invalidate(
    principal: Principal = Depends(require_roles(PATIENT)),
    service: CapabilityService = Depends(svc),
):
    return InvalidateOut(expired=await service.invalidate(principal.user_id))

@router.get("/capability/validate", response_model=CapabilityValidateOut)
async def validate(token: str | None = Query(default=None), service: CapabilityService = Depends(svc)):
    return await service.validate(token)

@router.get("/capability/resolve", response_model=CapabilityResolveOut)
async def resolve(
    request: Request,
    token: str = Query(default=""),
    service: CapabilityService = Depends(svc),
    session: AsyncSession = Depends(get_session),
):
    resolved = await service.resolve(token)
    patient = await DirectoryService(session).patient_summary(resolved.subject_id)
    await AuditService(session).log(ANONYMOUS, ANONYMOUS, "resolve", "patient", str(resolved.subject_id),
                                    purpose="capability", request=request)
    return CapabilityResolveOut(
        subject_id=resolved.subject_id,
        scope=resolved.scope,
        expires_at=resolved.expires_at,
        patient=patient,
    )
