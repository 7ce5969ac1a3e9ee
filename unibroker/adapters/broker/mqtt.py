"""MQTT Broker Adapter for unibroker.

Flat-topic backend via aiomqtt. Topics are plain MQTT topic strings; there is
no server-side queue, so a message published while nobody is subscribed is
gone (unless ``retain`` is set).

One dispatch task per connection reads ``client.messages`` and routes each
message to the callback of its exact topic, falling back to the first
subscribed filter whose ``+``/``#`` wildcards match it.

aiomqtt does not reconnect on its own. When the dispatch task loses the
connection the broker becomes ``DISCONNECTED`` and operations fail until the
host calls :meth:`MqttBroker.connect` again, which restores every tracked
subscription in one call.

Example:
    ```python
    broker = create_broker("mqtt", urls=["mqtt://localhost:1883"], qos=1)

    async with broker:
        await broker.subscribe("sensors/+/temperature", on_reading)
        await broker.publish("sensors/kitchen/temperature", {"c": 21.5})
    ```
"""

import ssl
from dataclasses import dataclass
from functools import partial
from urllib.parse import unquote, urlsplit
from uuid import UUID

import asyncio
import typing as t
from contextlib import AsyncExitStack, suppress
from pydantic import Field, SecretStr
from pydantic_settings import NoDecode

from unibroker.adapters import AdapterCapability, AdapterMetadata, AdapterStatus
from unibroker.cleanup import CleanupMixin

from ._base import (
    BrokerBatchError,
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

# Lazy imports for aiomqtt
_aiomqtt_imports: dict[str, t.Any] = {}

_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883}
_TLS_SCHEMES = frozenset({"mqtts", "ssl"})

MODULE_METADATA = AdapterMetadata(
    module_id=UUID("c3e8a41d-6f27-4b90-8d1e-2a5f7b9c0e63"),
    name="MQTT Broker",
    category="broker",
    provider="mqtt",
    version="1.0.0",
    status=AdapterStatus.BETA,
    capabilities=[
        AdapterCapability.ASYNC_OPERATIONS,
        AdapterCapability.HEALTH_CHECKS,
        AdapterCapability.WILDCARD_SUBSCRIBE,
        AdapterCapability.TLS_SUPPORT,
        AdapterCapability.BULK_OPERATIONS,
    ],
    required_packages=["aiomqtt>=2.0.0"],
    description="Flat-topic MQTT broker with wildcard dispatch",
    settings_class="MqttBrokerSettings",
    config_example={
        "urls": ["mqtt://localhost:1883"],
        "qos": 1,
        "client_id": "unibroker",
    },
)


def _get_aiomqtt_imports() -> dict[str, t.Any]:
    """Lazy import of aiomqtt dependencies."""
    if not _aiomqtt_imports:
        try:
            import aiomqtt

            _aiomqtt_imports.update(
                {
                    "Client": aiomqtt.Client,
                    "Topic": aiomqtt.Topic,
                    "MqttError": aiomqtt.MqttError,
                    "MqttCodeError": aiomqtt.MqttCodeError,
                },
            )
        except ImportError as e:
            raise ImportError(
                "aiomqtt is required for MqttBroker. "
                "Install with: pip install aiomqtt>=2.0.0"
            ) from e

    return _aiomqtt_imports


def _translate_error(error: BaseException, message: str) -> BrokerException:
    if isinstance(error, BrokerException):
        return error

    imports = _get_aiomqtt_imports()
    if isinstance(error, TimeoutError):
        return BrokerTimeoutError(f"{message}: timed out", original_error=error)
    if isinstance(error, imports["MqttCodeError"]):
        return BrokerProtocolError(f"{message}: {error}", original_error=error)
    if isinstance(error, imports["MqttError"] | ConnectionError | OSError):
        return BrokerConnectionError(f"{message}: {error}", original_error=error)
    return BrokerProtocolError(f"{message}: {error}", original_error=error)


class MqttBrokerSettings(BrokerSettings):
    """Settings for the MQTT broker."""

    urls: t.Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["mqtt://localhost:1883"],
    )

    qos: int = Field(default=0, ge=0, le=2)
    retain: bool = False
    client_id: str | None = None
    keepalive: int = Field(default=60, gt=0)

    # Used when the URL itself carries no credentials
    username: str | None = None
    password: SecretStr | None = None

    @property
    def publish_qos(self) -> int:
        # a confirmed publish needs at least a PUBACK
        return max(self.qos, 1) if self.enable_ack else self.qos


@dataclass
class TopicSubscription:
    topic: str
    qos: int


class MqttBroker(BrokerMixin, CleanupMixin):
    """Flat-topic broker adapter."""

    backend: t.ClassVar[str] = "mqtt"

    def __init__(self, settings: MqttBrokerSettings | None = None) -> None:
        super().__init__()
        self._settings: MqttBrokerSettings = settings or MqttBrokerSettings()
        self._lifecycle = ConnectionLifecycle(self.backend)
        self._registry: TopicRegistry[TopicSubscription] = TopicRegistry()
        self._client: t.Any = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()

    # ========================================================================
    # Connection Management
    # ========================================================================

    def _client_options(self, url: str) -> dict[str, t.Any]:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in _DEFAULT_PORTS:
            msg = f"Unsupported MQTT url scheme: {scheme!r}"
            raise BrokerProtocolError(msg)

        username = unquote(parts.username) if parts.username else self._settings.username
        if parts.password is not None:
            password: str | None = unquote(parts.password)
        elif self._settings.password is not None:
            password = self._settings.password.get_secret_value()
        else:
            password = None

        options: dict[str, t.Any] = {
            "hostname": parts.hostname or "localhost",
            "port": parts.port or _DEFAULT_PORTS[scheme],
            "username": username,
            "password": password,
            "identifier": self._settings.client_id,
            "keepalive": self._settings.keepalive,
            "timeout": self._settings.connect_timeout,
        }
        if scheme in _TLS_SCHEMES:
            options["tls_context"] = ssl.create_default_context()
        options.update(self._settings.connect_options)
        return options

    async def connect(self) -> None:
        """Connect to the first reachable URL and start dispatching."""
        self._lifecycle.check_open()
        async with self._connect_lock:
            if self._lifecycle.is_connected:
                return
            if not self._settings.urls:
                msg = "No MQTT urls configured"
                raise BrokerConnectionError(msg)

            client_class = _get_aiomqtt_imports()["Client"]
            last_error: BaseException | None = None

            for url in self._settings.urls:
                options = self._client_options(url)
                self._lifecycle.connecting(redact_url(url))
                client = client_class(**options)
                try:
                    await asyncio.wait_for(
                        client.__aenter__(),
                        timeout=self._settings.connect_timeout,
                    )
                except Exception as e:
                    last_error = e
                    self._lifecycle.connect_failed(e)
                    continue

                try:
                    await self._restore(client)
                except Exception as e:
                    with suppress(Exception):
                        await client.__aexit__(None, None, None)
                    self._lifecycle.connect_failed(e)
                    raise _translate_error(e, "Failed to restore subscriptions") from e

                self._attach(client)
                self._lifecycle.connected()
                return

            msg = "Failed to establish MQTT connection"
            raise BrokerConnectionError(msg, original_error=last_error)

    async def _restore(self, client: t.Any) -> None:
        subscriptions = [(sub.topic, sub.qos) for sub in self._registry.handles()]
        if subscriptions:
            await client.subscribe(subscriptions)
            self.logger.info(f"Restored {len(subscriptions)} MQTT subscription(s)")

    def _attach(self, client: t.Any) -> None:
        self._client = client
        self.register_resource(client, closer=partial(client.__aexit__, None, None, None))
        self._dispatcher = asyncio.create_task(self._dispatch_loop(client))

    async def _dispatch_loop(self, client: t.Any) -> None:
        mqtt_error = _get_aiomqtt_imports()["MqttError"]
        try:
            async for message in client.messages:
                await self._deliver(message)
        except mqtt_error as e:
            if self._lifecycle.is_closed or client is not self._client:
                return
            self._client = None
            self.unregister_resource(client)
            self._lifecycle.failed(e)
            self._lifecycle.disconnected(e)
            with suppress(Exception):
                await client.__aexit__(None, None, None)

    async def close(self) -> None:
        await self._lifecycle.close(self._shutdown)

    async def _shutdown(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            with suppress(asyncio.CancelledError):
                await self._dispatcher
            self._dispatcher = None

        self._registry.clear()
        errors = await self.cleanup()
        self._client = None

        if errors:
            msg = f"{len(errors)} error(s) while closing MQTT broker"
            raise BrokerConnectionError(msg, original_error=errors[0])

    # ========================================================================
    # Delivery
    # ========================================================================

    def _route(self, message: t.Any) -> tuple[str, ListenerFunc] | None:
        topic = message.topic.value
        callback = self._registry.callback(topic)
        if callback is not None:
            return topic, callback
        for subscription, callback in self._registry.callbacks().items():
            if message.topic.matches(subscription):
                return subscription, callback
        return None

    async def _deliver(self, message: t.Any) -> None:
        topic = message.topic.value
        route = self._route(message)
        if route is None:
            self.logger.debug(f"Dropping message on {topic}: no subscription")
            return

        subscription, callback = route
        payload = message.payload
        if isinstance(payload, str):
            payload = payload.encode()
        metadata = {
            "topic": topic,
            "backend": self.backend,
            "qos": message.qos,
            "retain": message.retain,
            "mid": message.mid,
            "subscription": subscription,
        }
        try:
            await self._dispatch(callback, self._decode(topic, payload), metadata)
        except Exception:
            self.logger.exception(f"Callback for {subscription} failed")

    # ========================================================================
    # Public Interface
    # ========================================================================

    async def _open_topic(self, topic: str) -> TopicSubscription:
        qos = self._settings.qos
        try:
            await self._client.subscribe(topic, qos=qos, **self._settings.consume_options)
        except Exception as e:
            raise _translate_error(e, f"Failed to subscribe to {topic}") from e
        return TopicSubscription(topic=topic, qos=qos)

    async def subscribe(self, topic: str, callback: ListenerFunc) -> None:
        await self._lifecycle.guard(wait=True, timeout=self._settings.publish_timeout)
        async with self._registry.lock(topic):
            await self._registry.acquire(topic, partial(self._open_topic, topic))
            self._registry.set_callback(topic, callback)
        self.logger.debug(f"Subscribed to {topic}")

    async def unsubscribe(self, topic: str) -> None:
        self._lifecycle.check_open()
        async with self._registry.lock(topic):
            if self._registry.pop(topic) is None:
                return
            if not self._lifecycle.is_connected:
                # dropped locally; connect() will not restore it
                return
            try:
                await self._client.unsubscribe(topic)
            except Exception as e:
                raise _translate_error(e, f"Failed to unsubscribe from {topic}") from e
        self.logger.debug(f"Unsubscribed from {topic}")

    async def subscribe_many(self, topics: list[str], callback: ListenerFunc) -> None:
        """Subscribe every topic with one native request."""
        await self._lifecycle.guard(wait=True, timeout=self._settings.publish_timeout)
        unique = list(dict.fromkeys(topics))
        qos = self._settings.qos

        async with AsyncExitStack() as stack:
            for topic in sorted(unique):
                await stack.enter_async_context(self._registry.lock(topic))

            new = [topic for topic in unique if topic not in self._registry]
            if new:
                try:
                    await self._client.subscribe(
                        [(topic, qos) for topic in new],
                        **self._settings.consume_options,
                    )
                except Exception as e:
                    raise self._batch_error("subscribe", topics, e) from e
                for topic in new:
                    self._registry.add(topic, TopicSubscription(topic=topic, qos=qos))
            for topic in unique:
                self._registry.set_callback(topic, callback)

        self.logger.debug(f"Subscribed to {len(unique)} topic(s)")

    async def unsubscribe_many(self, topics: list[str]) -> None:
        """Unsubscribe the active subset of ``topics`` with one native request."""
        self._lifecycle.check_open()
        unique = list(dict.fromkeys(topics))

        async with AsyncExitStack() as stack:
            for topic in sorted(unique):
                await stack.enter_async_context(self._registry.lock(topic))

            active = [topic for topic in unique if self._registry.pop(topic) is not None]
            if not active or not self._lifecycle.is_connected:
                return
            try:
                await self._client.unsubscribe(active)
            except Exception as e:
                raise self._batch_error("unsubscribe", active, e) from e

        self.logger.debug(f"Unsubscribed from {len(active)} topic(s)")

    @staticmethod
    def _batch_error(operation: str, topics: list[str], error: Exception) -> BrokerBatchError:
        translated = _translate_error(error, f"Failed to {operation} {len(topics)} topic(s)")
        errors: dict[int, BaseException] = dict.fromkeys(range(len(topics)), translated)
        msg = f"{len(topics)} of {len(topics)} {operation} operations failed"
        return BrokerBatchError(msg, results=list(errors.values()), errors=errors)

    async def publish(self, topic: str, payload: t.Any) -> None:
        timeout = self._settings.publish_timeout
        await self._lifecycle.guard(wait=True, timeout=timeout)
        body = self._encode(payload)
        try:
            await asyncio.wait_for(
                self._client.publish(
                    topic,
                    payload=body,
                    qos=self._settings.publish_qos,
                    retain=self._settings.retain,
                    **self._settings.publish_options,
                ),
                timeout=timeout,
            )
        except Exception as e:
            raise _translate_error(e, f"Failed to publish to {topic}") from e


def create_mqtt_broker(settings: MqttBrokerSettings | None = None) -> MqttBroker:
    """Create an MQTT broker instance."""
    return MqttBroker(settings)


Broker = MqttBroker

__all__ = [
    "Broker",
    "MqttBroker",
    "MqttBrokerSettings",
    "TopicSubscription",
    "create_mqtt_broker",
]
