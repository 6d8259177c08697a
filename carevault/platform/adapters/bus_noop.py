import json
from collections import deque
import logging
from carevault.platform.ports.event_bus import EventBusPort

log = logging.getLogger("bus.noop")

class NoopEventBus(EventBusPort):
    def __init__(self):
        self.published: deque[tuple[str, str, dict]] = deque(maxlen=1000)

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        self.published.append((topic, key, value))
        log.debug(f"[NOOP BUS] topic={topic} key={key} value={json.dumps(value, default=str)}")
