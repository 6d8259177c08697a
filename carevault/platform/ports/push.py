from typing import Protocol, runtime_checkable

@runtime_checkable
class PushPort(Protocol):
    async def send(self, address: str, title: str, body: str, data: dict | None = None) -> str | None: ...
