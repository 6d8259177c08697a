"""In-process registry of open client event streams.

Each connection owns a sink (a bounded queue for SSE clients) and a heartbeat
task. Any failed write, whether from a broadcast or a heartbeat, closes the
connection. The registry is owned by the application (``app.state``) and
injected where needed; it is never a module global.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Protocol

from carevault.core.config import settings

log = logging.getLogger("notifications.live")

_CLOSED = object()


class SinkClosed(Exception):
    pass


class Sink(Protocol):
    def write(self, message: dict) -> None: ...
    def close(self) -> None: ...


class QueueSink:
    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def write(self, message: dict) -> None:
        if self.closed:
            raise SinkClosed("write to closed connection")
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            # a consumer this far behind is treated as gone
            raise SinkClosed("connection buffer full")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(_CLOSED)

    async def messages(self) -> AsyncIterator[dict]:
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            yield item


def live_message(type_: str, **fields) -> dict:
    return {"type": type_, "timestamp": datetime.now(timezone.utc).isoformat(), **fields}


def sse_format(message: dict) -> str:
    return f"event: {message['type']}\ndata: {json.dumps(message, default=str)}\n\n"


@dataclass
class LiveConnection:
    recipient_id: uuid.UUID
    recipient_role: str
    sink: Sink
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    heartbeat_task: asyncio.Task | None = None

    def matches(self, recipient_id: uuid.UUID | None, recipient_role: str) -> bool:
        # recipient_id None addresses every connection of the role
        if self.recipient_role != recipient_role:
            return False
        return recipient_id is None or self.recipient_id == recipient_id


class LiveConnectionRegistry:
    def __init__(self, heartbeat_interval: float | None = None, queue_size: int | None = None):
        self.heartbeat_interval = settings.HEARTBEAT_INTERVAL_SECONDS if heartbeat_interval is None else heartbeat_interval
        self.queue_size = queue_size or settings.LIVE_QUEUE_SIZE
        self._connections: dict[str, LiveConnection] = {}
        self._lock = asyncio.Lock()

    async def open(self, recipient_id: uuid.UUID, recipient_role: str, sink: Sink | None = None) -> LiveConnection:
        conn = LiveConnection(
            recipient_id=recipient_id,
            recipient_role=recipient_role,
            sink=sink if sink is not None else QueueSink(self.queue_size),
        )
        async with self._lock:
            self._connections[conn.connection_id] = conn
            if self.heartbeat_interval > 0:
                conn.heartbeat_task = asyncio.create_task(self._heartbeat(conn.connection_id))
        log.info("Live connection %s opened for %s %s", conn.connection_id, recipient_role, recipient_id)
        return conn

    async def close(self, connection_id: str) -> bool:
        async with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is None:
                return False
            task = conn.heartbeat_task
            if task is not None and task is not asyncio.current_task():
                task.cancel()
            conn.sink.close()
        log.info("Live connection %s closed", connection_id)
        return True

    async def close_all(self) -> int:
        async with self._lock:
            ids = list(self._connections)
        for cid in ids:
            await self.close(cid)
        return len(ids)

    async def broadcast(self, recipient_id: uuid.UUID | None, recipient_role: str, message: dict) -> int:
        async with self._lock:
            targets = [c for c in self._connections.values() if c.matches(recipient_id, recipient_role)]

        delivered = 0
        dead: list[str] = []
        for conn in targets:
            try:
                conn.sink.write(message)
                delivered += 1
            except Exception as ex:
                log.warning("Dropping live connection %s after failed write: %s", conn.connection_id, ex)
                dead.append(conn.connection_id)
        for cid in dead:
            await self.close(cid)
        return delivered

    def count(self, recipient_id: uuid.UUID | None = None, recipient_role: str | None = None) -> int:
        if recipient_role is None:
            return len(self._connections)
        return sum(1 for c in list(self._connections.values()) if c.matches(recipient_id, recipient_role))

    def get(self, connection_id: str) -> LiveConnection | None:
        return self._connections.get(connection_id)

    async def _heartbeat(self, connection_id: str):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            conn = self._connections.get(connection_id)
            if conn is None:
                return
            try:
                conn.sink.write(live_message("heartbeat"))
            except Exception as ex:
                log.info("Heartbeat failed for live connection %s: %s", connection_id, ex)
                await self.close(connection_id)
                return
