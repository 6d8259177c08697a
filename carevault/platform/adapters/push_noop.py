import logging
from carevault.platform.ports.push import PushPort

log = logging.getLogger("push.noop")

class NoopPush(PushPort):
    async def send(self, address: str, title: str, body: str, data: dict | None = None) -> str | None:
        log.info(f"[NOOP PUSH] to={address[:12]}... title={title!r} data_keys={sorted((data or {}).keys())}")
        return None
