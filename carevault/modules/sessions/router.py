import uuid
from datetime import datetime
from typing import Callable
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.api.deps import get_dispatcher, get_clock
from carevault.core.db import get_session
from carevault.core.security import get_principal, require_roles, Principal, PATIENT, DOCTOR
from carevault.modules.notifications.service import NotificationDispatcher
from carevault.modules.sessions.schemas import (
    SessionRequestCreate, AnonymousRequestCreate, SessionRespond, SessionOut,
    SessionStatusOut, MySessionOut, CleanupOut,
)
from carevault.modules.sessions.service import ConsentService

router = APIRouter()

def svc(
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ConsentService:
    return ConsentService(session, dispatcher, clock=clock)

@router.post("/sessions/request", response_model=SessionOut, status_code=201)
async def create_request(
    payload: SessionRequestCreate,
    principal: Principal = Depends(require_roles(DOCTOR)),
    service: ConsentService = Depends(svc),
):
    return await service.create_request(principal.user_id, payload.subject_id, payload.label)

@router.post("/sessions/request/anonymous", response_model=SessionOut, status_code=201)
async def create_anonymous_request(payload: AnonymousRequestCreate, service: ConsentService = Depends(svc)):
    return await service.create_anonymous_request(payload.token, payload.label)

@router.post("/sessions/{session_id}/respond", response_model=SessionOut)
async def respond(
    session_id: uuid.UUID,
    payload: SessionRespond,
    principal: Principal = Depends(require_roles(PATIENT)),
    service: ConsentService = Depends(svc),
):
    return await service.respond(session_id, principal.user_id, payload.decision)

@router.get("/sessions/{session_id}/status", response_model=SessionStatusOut)
async def session_status(
    session_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    return await service.status(session_id, principal)

@router.get("/sessions/requests", response_model=list[SessionOut])
async def pending_requests(
    principal: Principal = Depends(require_roles(PATIENT)),
    service: ConsentService = Depends(svc),
):
    return await service.pending_for_subject(principal.user_id)

@router.get("/sessions/active", response_model=list[SessionOut])
async def active_sessions(
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    return await service.active_for(principal)

@router.get("/sessions/mine", response_model=list[MySessionOut])
async def my_sessions(
    principal: Principal = Depends(require_roles(DOCTOR)),
    service: ConsentService = Depends(svc),
):
    return await service.mine(principal.user_id)

@router.delete("/sessions/cleanup", response_model=CleanupOut)
async def cleanup(
    principal: Principal = Depends(require_roles(DOCTOR)),
    service: ConsentService = Depends(svc),
):
    return CleanupOut(deleted=await service.sweep_expired())
