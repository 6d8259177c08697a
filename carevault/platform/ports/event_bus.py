from typing import Protocol, runtime_checkable

@runtime_checkable
class EventBusPort(Protocol):
    """Outbound domain events for consumers outside this process.

    ``key`` is the recipient id for notification events so a partitioned bus
    keeps one recipient's events in order.
    """

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None: ...
