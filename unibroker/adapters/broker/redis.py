"""Redis Broker Adapter for unibroker.

Pattern pub/sub backend over ``PSUBSCRIBE``/``PUBLISH`` using redis-py's
asyncio client.

Two connections are used: the primary client owns the ``PubSub`` connection
(a subscribed connection cannot issue regular commands) and a second
publisher client with its own pool carries ``PUBLISH``. Topics passed to
``subscribe`` are glob patterns; the delivered ``metadata["topic"]`` is the
concrete channel and ``metadata["pattern"]`` the subscription it matched.

Redis pub/sub has no persistence and no acknowledgement: a message published
while nobody listens is lost, and ``enable_ack`` has no effect. Operations
fail fast unless the broker is connected; after a connection loss the host
calls :meth:`RedisBroker.connect` again, which re-subscribes every tracked
pattern.

Example:
    ```python
    broker = create_broker("redis", urls=["redis://localhost:6379/0"])

    async with broker:
        await broker.subscribe("events.*", on_event)
        await broker.publish("events.user", {"id": 7})
    ```
"""

from dataclasses import dataclass
from functools import partial
from urllib.parse import urlsplit
from uuid import UUID

import asyncio
import typing as t
from contextlib import suppress
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import NoDecode

from unibroker.adapters import AdapterCapability, AdapterMetadata, AdapterStatus
from unibroker.cleanup import CleanupMixin

from ._base import (
    BrokerConnectionError,
    BrokerException,
    BrokerMixin,
    BrokerProtocolError,
    BrokerSettings,
    BrokerTimeoutError,
    ListenerFunc,
    redact_url,
)
from ._lifecycle import ConnectionLifecycle
from ._registry import TopicRegistry

# Lazy imports for redis
_redis_imports: dict[str, t.Any] = {}

_SCHEMES = ("redis", "rediss", "unix")

MODULE_METADATA = AdapterMetadata(
    module_id=UUID("8e2d6b71-0a4f-4c39-b5e8-1f7c3d9a6e24"),
    name="Redis Broker",
    category="broker",
    provider="redis",
    version="1.0.0",
    status=AdapterStatus.STABLE,
    capabilities=[
        AdapterCapability.ASYNC_OPERATIONS,
        AdapterCapability.HEALTH_CHECKS,
        AdapterCapability.PATTERN_SUBSCRIBE,
        AdapterCapability.TLS_SUPPORT,
        AdapterCapability.BULK_OPERATIONS,
    ],
    required_packages=["redis>=5.0.1"],
    description="Redis pattern pub/sub broker",
    settings_class="RedisBrokerSettings",
    config_example={
        "urls": ["redis://localhost:6379/0"],
        "encoding": "json",
    },
)


def _get_redis_imports() -> dict[str, t.Any]:
    """Lazy import of redis dependencies."""
    if not _redis_imports:
        try:
            from redis.asyncio import Redis
            from redis.exceptions import (
                ConnectionError,
                RedisError,
                TimeoutError,
            )

            _redis_imports.update(
                {
                    "Redis": Redis,
                    "ConnectionError": ConnectionError,
                    "TimeoutError": TimeoutError,
                    "RedisError": RedisError,
                },
            )
        except ImportError as e:
            raise ImportError(
                "redis is required for RedisBroker. "
                "Install with: pip install redis>=5.0.1"
            ) from e

    return _redis_imports


def _translate_error(error: BaseException, message: str) -> BrokerException:
    if isinstance(error, BrokerException):
        return error

    imports = _get_redis_imports()
    if isinstance(error, TimeoutError | imports["TimeoutError"]):
        return BrokerTimeoutError(f"{message}: timed out", original_error=error)
    if isinstance(error, imports["ConnectionError"] | ConnectionError | OSError):
        return BrokerConnectionError(f"{message}: {error}", original_error=error)
    return BrokerProtocolError(f"{message}: {error}", original_error=error)


class RedisBrokerSettings(BrokerSettings):
    """Settings for the Redis broker."""

    urls: t.Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["redis://localhost:6379/0"],
    )

    # Applied when the URL does not carry them
    username: str | None = None
    password: SecretStr | None = None
    db: int | None = Field(default=None, ge=0)

    @field_validator("urls")
    @classmethod
    def check_schemes(cls, value: list[str]) -> list[str]:
        for url in value:
            if urlsplit(url).scheme.lower() not in _SCHEMES:
                msg = f"Redis url must start with redis://, rediss:// or unix://: {url!r}"
                raise ValueError(msg)
        return value


@dataclass
class PatternSubscription:
    pattern: str


def _text(value: t.Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class RedisBroker(BrokerMixin, CleanupMixin):
    """Pattern pub/sub broker adapter."""

    backend: t.ClassVar[str] = "redis"

    def __init__(self, settings: RedisBrokerSettings | None = None) -> None:
        super().__init__()
        self._settings: RedisBrokerSettings = settings or RedisBrokerSettings()
        self._lifecycle = ConnectionLifecycle(self.backend)
        self._registry: TopicRegistry[PatternSubscription] = TopicRegistry()
        self._client: t.Any = None
        self._publisher: t.Any = None
        self._pubsub: t.Any = None
        self._listener: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()

    # ========================================================================
    # Connection Management
    # ========================================================================

    def _build_client(self, url: str) -> t.Any:
        options: dict[str, t.Any] = {
            "decode_responses": False,
            "socket_connect_timeout": self._settings.connect_timeout,
        }
        if self._settings.username is not None:
            options["username"] = self._settings.username
        if self._settings.password is not None:
            options["password"] = self._settings.password.get_secret_value()
        if self._settings.db is not None:
            options["db"] = self._settings.db
        options.update(self._settings.connect_options)
        return _get_redis_imports()["Redis"].from_url(url, **options)

    async def _open_client(self, url: str, role: str) -> t.Any:
        client = self._build_client(url)
        try:
            await asyncio.wait_for(client.ping(), timeout=self._settings.connect_timeout)
        except Exception as e:
            self.logger.error(f"Redis {role} client failed to connect: {e}")
            with suppress(Exception):
                await client.aclose()
            raise
        self.logger.info(f"Redis {role} client connected: {redact_url(url)}")
        return client

    async def connect(self) -> None:
        """Connect the primary and publisher clients to the first reachable URL."""
        self._lifecycle.check_open()
        async with self._connect_lock:
            if self._lifecycle.is_connected:
                return
            await self._teardown()
            if not self._settings.urls:
                msg = "No Redis urls configured"
                raise BrokerConnectionError(msg)

            last_error: BaseException | None = None
            for url in self._settings.urls:
                self._lifecycle.connecting(redact_url(url))
                try:
                    await self._open(url)
                except Exception as e:
                    last_error = e
                    await self._teardown()
                    self._lifecycle.connect_failed(e)
                    continue

                self._lifecycle.connected()
                return

            msg = "Failed to establish Redis connection"
            raise BrokerConnectionError(msg, original_error=last_error)

    async def _open(self, url: str) -> None:
        self._client = await self._open_client(url, "primary")
        self.register_resource(self._client)
        self._publisher = await self._open_client(url, "publisher")
        self.register_resource(self._publisher)
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        self.register_resource(self._pubsub)

        patterns = self._registry.topics()
        if patterns:
            await self._pubsub.psubscribe(*patterns)
            self._start_listener()
            self.logger.info(f"Restored {len(patterns)} Redis pattern subscription(s)")

    async def _teardown(self) -> None:
        """Release the clients left over from a lost or failed connection."""
        await self._stop_listener()
        for error in await self.cleanup():
            self.logger.debug(f"Ignoring error while releasing Redis client: {error}")
        self._client = self._publisher = self._pubsub = None

    def _start_listener(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen(self._pubsub))

    async def _stop_listener(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            with suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None

    async def _listen(self, pubsub: t.Any) -> None:
        imports = _get_redis_imports()
        try:
            while True:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message is not None:
                    await self._deliver(message)
        except (imports["RedisError"], OSError) as e:
            if self._lifecycle.is_closed or pubsub is not self._pubsub:
                return
            self._lifecycle.failed(e)
            self._lifecycle.disconnected(e)

    async def close(self) -> None:
        await self._lifecycle.close(self._shutdown)

    async def _shutdown(self) -> None:
        await self._stop_listener()
        self._registry.clear()
        errors = await self.cleanup()
        self._client = self._publisher = self._pubsub = None

        if errors:
            msg = f"{len(errors)} error(s) while closing Redis broker"
            raise BrokerConnectionError(msg, original_error=errors[0])

    # ========================================================================
    # Delivery
    # ========================================================================

    async def _deliver(self, message: dict[str, t.Any]) -> None:
        if message.get("type") != "pmessage":
            return
        pattern = _text(message["pattern"])
        channel = _text(message["channel"])
        callback = self._registry.callback(pattern)
        if callback is None:
            return

        metadata = {"topic": channel, "backend": self.backend, "pattern": pattern}
        try:
            payload = self._decode(channel, message["data"])
            await self._dispatch(callback, payload, metadata)
        except Exception:
            self.logger.exception(f"Callback for {pattern} failed")

    # ========================================================================
    # Public Interface
    # ========================================================================

    async def _open_pattern(self, pattern: str) -> PatternSubscription:
        try:
            await self._pubsub.psubscribe(pattern)
        except Exception as e:
            raise _translate_error(e, f"Failed to subscribe to {pattern}") from e
        self._start_listener()
        return PatternSubscription(pattern=pattern)

    async def subscribe(self, topic: str, callback: ListenerFunc) -> None:
        self._lifecycle.check()
        async with self._registry.lock(topic):
            await self._registry.acquire(topic, partial(self._open_pattern, topic))
            self._registry.set_callback(topic, callback)
        self.logger.debug(f"Subscribed to pattern {topic}")

    async def unsubscribe(self, topic: str) -> None:
        self._lifecycle.check_open()
        async with self._registry.lock(topic):
            if self._registry.pop(topic) is None:
                return
            if not self._lifecycle.is_connected:
                return
            try:
                await self._pubsub.punsubscribe(topic)
            except Exception as e:
                raise _translate_error(e, f"Failed to unsubscribe from {topic}") from e
        self.logger.debug(f"Unsubscribed from pattern {topic}")

    async def publish(self, topic: str, payload: t.Any) -> None:
        self._lifecycle.check()
        body = self._encode(payload)
        try:
            receivers = await asyncio.wait_for(
                self._publisher.publish(topic, body),
                timeout=self._settings.publish_timeout,
            )
        except Exception as e:
            raise _translate_error(e, f"Failed to publish to {topic}") from e
        if not receivers:
            self.logger.debug(f"Message on {topic} had no subscribers and was dropped")


def create_redis_broker(settings: RedisBrokerSettings | None = None) -> RedisBroker:
    """Create a Redis broker instance."""
    return RedisBroker(settings)


Broker = RedisBroker

__all__ = [
    "Broker",
    "PatternSubscription",
    "RedisBroker",
    "RedisBrokerSettings",
    "create_redis_broker",
]
