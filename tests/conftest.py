# tests/conftest.py
# Shared fixtures: a throwaway SQLite database per test, an injectable clock,
# a recording push adapter and an HTTP client bound to the ASGI app.
from __future__ import annotations

import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

import pytest

# Settings are read at import time; point them at SQLite before anything loads.
os.environ.setdefault("DATABASE_DSN", "sqlite+aiosqlite:///./carevault-test.db")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("PUSH_PROVIDER", "noop")
os.environ.setdefault("EVENT_BUS_PROVIDER", "noop")

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from carevault.api.deps import get_clock, get_live_registry, get_push_delivery
from carevault.core.base import Base
from carevault.core.db import get_session, import_models
from carevault.core.security import create_access_token, PATIENT, DOCTOR
from carevault.modules.directory.models import Patient, Doctor
from carevault.modules.notifications.live import LiveConnectionRegistry
from carevault.modules.notifications.push import PushDelivery
from carevault.modules.notifications.service import NotificationDispatcher
from carevault.platform.adapters.bus_noop import NoopEventBus


T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock handed to services in place of ``utcnow``."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingPush:
    """Push adapter double: records sends, can fail or stall on demand."""

    def __init__(self):
        self.sent: list[tuple[str, str, str, dict]] = []
        self.fail_times = 0
        self.delay = 0.0

    async def send(self, address: str, title: str, body: str, data: dict | None = None) -> str | None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("push provider unavailable")
        self.sent.append((address, title, body, data or {}))
        return f"msg-{len(self.sent)}"


# ---------- database ----------

@pytest.fixture
async def engine(tmp_path):
    # NullPool: every session gets its own connection, so concurrent writers really race
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'vault.db'}", poolclass=NullPool)
    import_models()
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as s:
        yield s


# ---------- collaborators ----------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def live() -> AsyncIterator[LiveConnectionRegistry]:
    registry = LiveConnectionRegistry(heartbeat_interval=0, queue_size=10)
    yield registry
    await registry.close_all()


@pytest.fixture
def push() -> RecordingPush:
    return RecordingPush()


@pytest.fixture
def bus() -> NoopEventBus:
    return NoopEventBus()


@pytest.fixture
async def delivery(session_factory, push, bus) -> AsyncIterator[PushDelivery]:
    d = PushDelivery(session_factory, push, bus, timeout=0.5, max_attempts=3)
    yield d
    await d.drain()


@pytest.fixture
def dispatcher_for(live, delivery):
    def make(session: AsyncSession) -> NotificationDispatcher:
        return NotificationDispatcher(session, live, delivery)
    return make


# ---------- directory seed ----------

@pytest.fixture
async def patient(session) -> Patient:
    p = Patient(name="Ada Patient", email="ada@example.com", gender="female", blood_type="O+", push_token="device-ada")
    session.add(p)
    await session.commit()
    return p


@pytest.fixture
async def doctor(session) -> Doctor:
    d = Doctor(name="Grey", email="grey@example.com", specialization="cardiology", push_token="device-grey")
    session.add(d)
    await session.commit()
    return d


@pytest.fixture
async def other_doctor(session) -> Doctor:
    d = Doctor(name="House", email="house@example.com")
    session.add(d)
    await session.commit()
    return d


def _bearer(user_id: uuid.UUID, role: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def bearer():
    return _bearer


@pytest.fixture
def as_patient(patient) -> dict[str, str]:
    return _bearer(patient.id, PATIENT)


@pytest.fixture
def as_doctor(doctor) -> dict[str, str]:
    return _bearer(doctor.id, DOCTOR)


# ---------- HTTP ----------

@pytest.fixture
async def app(session_factory, live, delivery, clock):
    from carevault.main import app as fastapi_app

    async def _session():
        async with session_factory() as s:
            yield s

    fastapi_app.dependency_overrides[get_session] = _session
    fastapi_app.dependency_overrides[get_live_registry] = lambda: live
    fastapi_app.dependency_overrides[get_push_delivery] = lambda: delivery
    fastapi_app.dependency_overrides[get_clock] = lambda: clock
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
