"""In-memory broker adapter for unibroker.

Delivers messages to subscribers inside the running event loop. Payloads go
through the configured encoding both ways, so serialization failures surface
exactly as they would on a network backend. Topics match exactly; messages
published to a topic with no subscriber are dropped.

Suitable for development and tests.
"""

from dataclasses import dataclass
from functools import partial
from uuid import UUID

import typing as t
from pydantic import Field
from pydantic_settings import NoDecode

from unibroker.adapters import AdapterCapability, AdapterMetadata, AdapterStatus
from unibroker.cleanup import CleanupMixin

from ._base import BrokerMixin, BrokerSettings, ListenerFunc
from ._lifecycle import ConnectionLifecycle
from ._registry import TopicRegistry

MODULE_METADATA = AdapterMetadata(
    module_id=UUID("1a7f4e92-3c5b-4d08-a6e1-9b2c8f0d5e37"),
    name="Memory Broker",
    category="broker",
    provider="memory",
    version="1.0.0",
    status=AdapterStatus.STABLE,
    capabilities=[
        AdapterCapability.ASYNC_OPERATIONS,
        AdapterCapability.HEALTH_CHECKS,
        AdapterCapability.BULK_OPERATIONS,
    ],
    required_packages=[],
    description="In-process broker for development and testing",
    settings_class="MemoryBrokerSettings",
    config_example={"encoding": "json"},
)


class MemoryBrokerSettings(BrokerSettings):
    urls: t.Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["memory://"],
    )


@dataclass
class MemoryTopic:
    topic: str
    delivered: int = 0


class MemoryBroker(BrokerMixin, CleanupMixin):
    """Exact-topic in-process broker."""

    backend: t.ClassVar[str] = "memory"

    def __init__(self, settings: MemoryBrokerSettings | None = None) -> None:
        super().__init__()
        self._settings: MemoryBrokerSettings = settings or MemoryBrokerSettings()
        self._lifecycle = ConnectionLifecycle(self.backend)
        self._registry: TopicRegistry[MemoryTopic] = TopicRegistry()
        self._published = 0

    async def connect(self) -> None:
        self._lifecycle.check_open()
        if self._lifecycle.is_connected:
            return
        endpoint = self._settings.urls[0] if self._settings.urls else "memory://"
        self._lifecycle.connecting(endpoint)
        self._lifecycle.connected()

    async def close(self) -> None:
        await self._lifecycle.close(self._shutdown)

    async def _shutdown(self) -> None:
        self._registry.clear()
        await self.cleanup()

    @staticmethod
    async def _open_topic(topic: str) -> MemoryTopic:
        return MemoryTopic(topic=topic)

    async def subscribe(self, topic: str, callback: ListenerFunc) -> None:
        self._lifecycle.check()
        async with self._registry.lock(topic):
            await self._registry.acquire(topic, partial(self._open_topic, topic))
            self._registry.set_callback(topic, callback)

    async def unsubscribe(self, topic: str) -> None:
        self._lifecycle.check_open()
        async with self._registry.lock(topic):
            self._registry.pop(topic)

    async def publish(self, topic: str, payload: t.Any) -> None:
        self._lifecycle.check()
        body = self._encode(payload)
        self._published += 1

        callback = self._registry.callback(topic)
        handle = self._registry.get(topic)
        if callback is None or handle is None:
            self.logger.debug(f"Message on {topic} had no subscribers and was dropped")
            return

        handle.delivered += 1
        metadata = {"topic": topic, "backend": self.backend, "sequence": self._published}
        try:
            await self._dispatch(callback, self._decode(topic, body), metadata)
        except Exception:
            self.logger.exception(f"Callback for {topic} failed")

    async def health_check(self) -> dict[str, t.Any]:
        health = await super().health_check()
        health["published"] = self._published
        health["delivered"] = {
            topic: handle.delivered
            for topic in self._registry.topics()
            if (handle := self._registry.get(topic)) is not None
        }
        return health


def create_memory_broker(settings: MemoryBrokerSettings | None = None) -> MemoryBroker:
    """Create an in-memory broker instance."""
    return MemoryBroker(settings)


Broker = MemoryBroker

__all__ = [
    "Broker",
    "MemoryBroker",
    "MemoryBrokerSettings",
    "MemoryTopic",
    "create_memory_broker",
]
