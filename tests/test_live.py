import asyncio
import uuid

from carevault.modules.notifications.live import (
    LiveConnectionRegistry, QueueSink, SinkClosed, live_message, sse_format,
)
from carevault.modules.notifications.router import event_stream


class BrokenSink:
    def __init__(self):
        self.closed = False

    def write(self, message: dict) -> None:
        raise SinkClosed("peer went away")

    def close(self) -> None:
        self.closed = True


def drain(sink: QueueSink) -> list[dict]:
    out = []
    while not sink.queue.empty():
        out.append(sink.queue.get_nowait())
    return out


async def test_broadcast_without_connections_is_a_noop(live):
    assert await live.broadcast(uuid.uuid4(), "patient", live_message("unread_count", count=1)) == 0


async def test_fanout_to_every_connection_of_the_recipient(live):
    me, someone_else = uuid.uuid4(), uuid.uuid4()
    a = await live.open(me, "patient")
    b = await live.open(me, "patient")
    c = await live.open(someone_else, "patient")

    assert await live.broadcast(me, "patient", live_message("unread_count", count=3)) == 2
    assert [m["count"] for m in drain(a.sink)] == [3]
    assert [m["count"] for m in drain(b.sink)] == [3]
    assert drain(c.sink) == []


async def test_role_must_match(live):
    uid = uuid.uuid4()
    conn = await live.open(uid, "doctor")
    assert await live.broadcast(uid, "patient", live_message("system")) == 0
    assert drain(conn.sink) == []


async def test_role_scoped_broadcast(live):
    doctors = [await live.open(uuid.uuid4(), "doctor") for _ in range(2)]
    patient = await live.open(uuid.uuid4(), "patient")
    assert await live.broadcast(None, "doctor", live_message("system", message="maintenance")) == 2
    assert all(len(drain(d.sink)) == 1 for d in doctors)
    assert drain(patient.sink) == []


async def test_dead_connection_is_pruned_and_others_still_served(live):
    uid = uuid.uuid4()
    healthy = await live.open(uid, "patient")
    broken_sink = BrokenSink()
    broken = await live.open(uid, "patient", sink=broken_sink)

    assert await live.broadcast(uid, "patient", live_message("unread_count", count=1)) == 1
    assert live.get(broken.connection_id) is None
    assert broken_sink.closed
    assert live.count(uid, "patient") == 1
    assert len(drain(healthy.sink)) == 1


async def test_slow_consumer_is_dropped_when_buffer_fills(live):
    uid = uuid.uuid4()
    conn = await live.open(uid, "patient", sink=QueueSink(maxsize=2))
    for i in range(2):
        assert await live.broadcast(uid, "patient", live_message("unread_count", count=i)) == 1
    assert await live.broadcast(uid, "patient", live_message("unread_count", count=2)) == 0
    assert live.get(conn.connection_id) is None


async def test_close_is_idempotent(live):
    conn = await live.open(uuid.uuid4(), "patient")
    assert await live.close(conn.connection_id) is True
    assert await live.close(conn.connection_id) is False
    assert live.count() == 0


async def test_heartbeats_flow_and_stop_on_close():
    registry = LiveConnectionRegistry(heartbeat_interval=0.01, queue_size=50)
    conn = await registry.open(uuid.uuid4(), "doctor")
    await asyncio.sleep(0.05)
    beats = [m for m in drain(conn.sink) if m["type"] == "heartbeat"]
    assert beats

    task = conn.heartbeat_task
    await registry.close(conn.connection_id)
    await asyncio.sleep(0)
    assert task.cancelled() or task.done()


async def test_failed_heartbeat_prunes_connection():
    registry = LiveConnectionRegistry(heartbeat_interval=0.01)
    conn = await registry.open(uuid.uuid4(), "doctor", sink=BrokenSink())
    await asyncio.sleep(0.05)
    assert registry.get(conn.connection_id) is None
    await registry.close_all()


async def test_close_all(live):
    for _ in range(3):
        await live.open(uuid.uuid4(), "patient")
    assert await live.close_all() == 3
    assert live.count() == 0


def test_sse_framing():
    frame = sse_format({"type": "unread_count", "timestamp": "t", "count": 2})
    assert frame.startswith("event: unread_count\ndata: {")
    assert frame.endswith("\n\n")
    assert '"count": 2' in frame


async def test_event_stream_yields_frames_until_closed(live):
    uid = uuid.uuid4()
    conn = await live.open(uid, "patient")
    conn.sink.write(live_message("connected"))
    stream = event_stream(live, conn)

    assert (await stream.__anext__()).startswith("event: connected\n")
    await live.broadcast(uid, "patient", live_message("unread_count", count=4))
    assert (await stream.__anext__()).startswith("event: unread_count\n")

    await live.close(conn.connection_id)
    assert [frame async for frame in stream] == []


async def test_event_stream_unregisters_on_disconnect(live):
    uid = uuid.uuid4()
    conn = await live.open(uid, "patient")
    conn.sink.write(live_message("connected"))
    stream = event_stream(live, conn)
    await stream.__anext__()

    await stream.aclose()
    assert live.get(conn.connection_id) is None
    assert await live.broadcast(uid, "patient", live_message("unread_count", count=1)) == 0
