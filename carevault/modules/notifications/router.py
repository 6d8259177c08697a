import uuid
import asyncio
import logging
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.api.deps import get_live_registry, get_dispatcher
from carevault.core.db import get_session
from carevault.core.errors import BadRequest, NoRecipients, RecipientNotFound
from carevault.core.security import get_principal, require_roles, Principal, DOCTOR
from carevault.modules.directory.service import DirectoryService
from carevault.modules.notifications.live import LiveConnectionRegistry, LiveConnection, live_message, sse_format
from carevault.modules.notifications.schemas import (
    NotificationOut, UnreadCountOut, MarkAllReadOut, PushTokenIn, PushTokenOut,
    SendIn, BulkSendIn, SendAllIn, SendOut, BulkSendOut, SendAllOut,
)
from carevault.modules.notifications.service import NotificationDispatcher, NotificationService

log = logging.getLogger(__name__)

router = APIRouter()

def svc(
    session: AsyncSession = Depends(get_session),
    live: LiveConnectionRegistry = Depends(get_live_registry),
) -> NotificationService:
    return NotificationService(session, live)

async def event_stream(live: LiveConnectionRegistry, conn: LiveConnection):
    """Drains one connection's sink as SSE frames; always unregisters on exit."""
    try:
        async for message in conn.sink.messages():
            yield sse_format(message)
    except asyncio.CancelledError:
        log.debug("Event stream %s cancelled by client", conn.connection_id)
        raise
    finally:
        await live.close(conn.connection_id)

@router.get("/notifications/stream")
async def stream(
    principal: Principal = Depends(get_principal),
    live: LiveConnectionRegistry = Depends(get_live_registry),
    service: NotificationService = Depends(svc),
):
    count = await service.unread_count(principal.user_id, principal.role)
    conn = await live.open(principal.user_id, principal.role)
    conn.sink.write(live_message("connected", message="Notification stream connected"))
    conn.sink.write(live_message("unread_count", count=count))
    return StreamingResponse(
        event_stream(live, conn),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )

@router.get("/notifications", response_model=list[NotificationOut])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    service: NotificationService = Depends(svc),
):
    return await service.list_for(principal.user_id, principal.role, unread_only=unread_only, limit=limit, offset=offset)

@router.get("/notifications/unread-count", response_model=UnreadCountOut)
async def unread_count(principal: Principal = Depends(get_principal), service: NotificationService = Depends(svc)):
    return UnreadCountOut(count=await service.unread_count(principal.user_id, principal.role))

@router.post("/notifications/read-all", response_model=MarkAllReadOut)
async def read_all(principal: Principal = Depends(get_principal), service: NotificationService = Depends(svc)):
    return MarkAllReadOut(updated=await service.mark_all_read(principal.user_id, principal.role))

@router.post("/notifications/{notification_id}/read", response_model=NotificationOut)
async def mark_read(
    notification_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: NotificationService = Depends(svc),
):
    return await service.mark_read(notification_id, principal.user_id, principal.role)

@router.post("/notifications/push-token", response_model=PushTokenOut)
async def register_push_token(
    payload: PushTokenIn,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    if not await DirectoryService(session).set_push_address(principal.user_id, principal.role, payload.token):
        raise BadRequest("No account for this role", role=principal.role)
    return PushTokenOut(role=principal.role)

# ---- manual sends ----

def _event(principal: Principal, payload: SendIn | BulkSendIn | SendAllIn) -> dict:
    return dict(sender_id=principal.user_id, sender_role=principal.role, kind="general",
                title=payload.title, body=payload.body, payload=payload.data)

@router.post("/notifications/send", response_model=SendOut, status_code=201)
async def send(
    payload: SendIn,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    directory = DirectoryService(session)
    if not await directory.active_ids(payload.role, [payload.user_id]):
        raise RecipientNotFound(recipient_id=str(payload.user_id), role=payload.role)
    n = await dispatcher.notify(recipient_id=payload.user_id, recipient_role=payload.role, **_event(principal, payload))
    address = await directory.push_address(payload.user_id, payload.role)
    return SendOut(notification_id=n.id, recipient_id=n.recipient_id, push_registered=bool(address))

@router.post("/notifications/send-bulk", response_model=BulkSendOut, status_code=201)
async def send_bulk(
    payload: BulkSendIn,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    requested = list(dict.fromkeys(payload.user_ids))
    found = await DirectoryService(session).active_ids(payload.role, requested)
    if not found:
        raise NoRecipients(role=payload.role)
    rows = await dispatcher.notify_many(found, payload.role, **_event(principal, payload))
    return BulkSendOut(total=len(requested), recorded=len(rows), recipients=[n.recipient_id for n in rows])

@router.post("/notifications/send-all", response_model=SendAllOut, status_code=201)
async def send_all(
    payload: SendAllIn,
    principal: Principal = Depends(require_roles(DOCTOR)),
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    recipients = await DirectoryService(session).active_ids(payload.role)
    rows = await dispatcher.notify_role(recipients, payload.role, **_event(principal, payload))
    return SendAllOut(total=len(rows))
