from datetime import datetime
from typing import Callable
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from carevault.core.base import utcnow
from carevault.core.db import get_session
from carevault.modules.notifications.live import LiveConnectionRegistry
from carevault.modules.notifications.push import PushDelivery
from carevault.modules.notifications.service import NotificationDispatcher

def get_live_registry(request: Request) -> LiveConnectionRegistry:
    return request.app.state.live_registry

def get_push_delivery(request: Request) -> PushDelivery | None:
    return getattr(request.app.state, "push_delivery", None)

def get_dispatcher(
    session: AsyncSession = Depends(get_session),
    live: LiveConnectionRegistry = Depends(get_live_registry),
    delivery: PushDelivery | None = Depends(get_push_delivery),
) -> NotificationDispatcher:
    return NotificationDispatcher(session, live, delivery)

def get_clock() -> Callable[[], datetime]:
    return utcnow
