from carevault.core.config import settings
from carevault.platform.ports.event_bus import EventBusPort
from carevault.platform.adapters.bus_noop import NoopEventBus
from carevault.platform.ports.push import PushPort
from carevault.platform.adapters.push_noop import NoopPush

class ProviderRegistry:
    _event_bus: EventBusPort | None = None
    _push: PushPort | None = None

    @classmethod
    def event_bus(cls) -> EventBusPort:
        if cls._event_bus is None:
            prov = (settings.EVENT_BUS_PROVIDER or "noop").lower()
            if prov == "redis":
                from carevault.platform.adapters.bus_redis import RedisEventBus
                cls._event_bus = RedisEventBus()
            else:
                cls._event_bus = NoopEventBus()
        return cls._event_bus

    @classmethod
    def push(cls) -> PushPort:
        if cls._push is None:
            if settings.PUSH_PROVIDER == "fcm":
                from carevault.platform.adapters.push_fcm import FcmPush
                cls._push = FcmPush()
            else:
                cls._push = NoopPush()
        return cls._push

registry = ProviderRegistry()
