"""Broker adapter interface for unibroker.

Every backend (AMQP, MQTT, Redis, in-memory) satisfies ``BrokerProtocol``:

* ``subscribe(topic, callback)`` / ``unsubscribe(topic)``
* ``publish(topic, payload)``
* ``connect()`` / ``close()``
* batch variants ``subscribe_many``, ``unsubscribe_many``, ``publish_many``

Callbacks receive ``(payload, metadata)``. ``metadata`` always carries the
``topic`` and ``backend`` keys; backends add their own delivery details.

The facade normalizes the call contract only. Each backend keeps its native
delivery guarantees: AMQP queues are durable and can confirm publishes, MQTT
follows the requested QoS, and Redis pub/sub drops messages nobody is
listening for.
"""

import sys
from inspect import isawaitable
from urllib.parse import urlsplit, urlunsplit

import asyncio
import msgspec
import typing as t
from datetime import UTC, datetime
from pydantic import Field, field_validator
from pydantic_settings import NoDecode

from unibroker.adapters import AdapterCapability
from unibroker.config import Settings
from unibroker.encode import PayloadEncoding, decode_payload, encode_payload
from unibroker.logger import get_logger

if t.TYPE_CHECKING:
    from ._lifecycle import ConnectionLifecycle, ConnectionState, LifecycleListener
    from ._registry import TopicRegistry

__all__ = [
    "BrokerBatchError",
    "BrokerClosedError",
    "BrokerConnectionError",
    "BrokerDeliveryError",
    "BrokerException",
    "BrokerMixin",
    "BrokerProtocol",
    "BrokerProtocolError",
    "BrokerSerializationError",
    "BrokerSettings",
    "BrokerTimeoutError",
    "ListenerFunc",
    "redact_url",
    "run_batch",
]

ListenerFunc = t.Callable[[t.Any, dict[str, t.Any]], t.Any]


def redact_url(url: str) -> str:
    """Hide the password of a connection URL for logs and diagnostics."""
    parts = urlsplit(url)
    if parts.password is None:
        return url
    netloc = parts.netloc.rsplit("@", 1)[1]
    user = f"{parts.username}:***@" if parts.username else ":***@"
    return urlunsplit(parts._replace(netloc=user + netloc))


# ============================================================================
# Exception Hierarchy
# ============================================================================


class BrokerException(Exception):
    """Base exception for all broker errors."""

    def __init__(
        self,
        message: str,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.original_error = original_error


class BrokerConnectionError(BrokerException):
    """Transport unreachable or connection not in an operable state."""


class BrokerProtocolError(BrokerException):
    """Backend rejected a request as malformed or disallowed."""


class BrokerDeliveryError(BrokerProtocolError):
    """Backend negatively acknowledged a published message."""


class BrokerTimeoutError(BrokerException):
    """An acknowledgement-bearing operation did not settle in time."""


class BrokerSerializationError(BrokerException):
    """Payload could not be encoded or decoded."""


class BrokerClosedError(BrokerException):
    """Operation attempted after close()."""


class BrokerBatchError(BrokerException):
    """One or more operations of a batch failed.

    Successful operations are not rolled back. ``results`` holds one entry per
    input in input order (the operation result or the exception it raised);
    ``errors`` maps input index to exception for the failed ones.
    """

    def __init__(
        self,
        message: str,
        results: list[t.Any],
        errors: dict[int, BaseException],
    ) -> None:
        first = next(iter(errors.values()), None)
        super().__init__(message, original_error=first)
        self.results = results
        self.errors = errors


# ============================================================================
# Settings
# ============================================================================


class BrokerSettings(Settings):
    """Settings shared by every broker adapter."""

    urls: t.Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Delivery
    enable_ack: bool = False
    encoding: PayloadEncoding = "json"

    # Exchange topology (exchange-based backends)
    exchange_name: str = "unibroker"
    exchange_type: str = "topic"
    exchange_durable: bool = True
    queue_durable: bool = True

    # Timeouts (seconds)
    connect_timeout: float = Field(default=10.0, gt=0)
    publish_timeout: float = Field(default=10.0, gt=0)

    # Pass-through backend tuning
    connect_options: dict[str, t.Any] = Field(default_factory=dict)
    consume_options: dict[str, t.Any] = Field(default_factory=dict)
    publish_options: dict[str, t.Any] = Field(default_factory=dict)

    @field_validator("urls", mode="before")
    @classmethod
    def coerce_urls(cls, value: t.Any) -> t.Any:
        if isinstance(value, str) and value.lstrip().startswith("["):
            return msgspec.json.decode(value)
        if isinstance(value, str):
            return [u.strip() for u in value.split(",") if u.strip()]
        return value


# ============================================================================
# Interface
# ============================================================================


@t.runtime_checkable
class BrokerProtocol(t.Protocol):
    """Unified publish/subscribe contract.

    Note: This is a Protocol (structural typing), not ABC (inheritance).
    """

    async def connect(self) -> None:
        """Open the transport connection (the host "ready" signal)."""
        ...

    async def close(self) -> None:
        """Release the connection and every handle. Idempotent."""
        ...

    async def subscribe(self, topic: str, callback: ListenerFunc) -> None:
        """Deliver every message on ``topic`` to ``callback``.

        A second subscribe on the same topic replaces the callback.
        """
        ...

    async def unsubscribe(self, topic: str) -> None:
        """Stop delivery for ``topic``; no-op if it was never subscribed."""
        ...

    async def publish(self, topic: str, payload: t.Any) -> None:
        """Send ``payload`` to ``topic``."""
        ...

    async def subscribe_many(self, topics: list[str], callback: ListenerFunc) -> None:
        ...

    async def unsubscribe_many(self, topics: list[str]) -> None:
        ...

    async def publish_many(self, topic: str, payloads: list[t.Any]) -> None:
        ...


# ============================================================================
# Mixin with the shared, stateless parts of the contract
# ============================================================================


async def run_batch(operation: str, calls: list[t.Awaitable[t.Any]]) -> list[t.Any]:
    """Await ``calls`` concurrently; raise BrokerBatchError if any failed."""
    results = list(await asyncio.gather(*calls, return_exceptions=True))
    errors = {
        index: result
        for index, result in enumerate(results)
        if isinstance(result, BaseException)
    }
    if errors:
        msg = f"{len(errors)} of {len(results)} {operation} operations failed"
        raise BrokerBatchError(msg, results=results, errors=errors)
    return results


class BrokerMixin:
    """Shared behaviour for broker adapters.

    Adapters own their state (settings, lifecycle, registry); the mixin only
    reads it.
    """

    backend: t.ClassVar[str] = "broker"

    _settings: BrokerSettings
    _lifecycle: "ConnectionLifecycle"
    _registry: "TopicRegistry[t.Any]"

    @property
    def logger(self) -> t.Any:
        return get_logger(self.backend)

    @property
    def settings(self) -> BrokerSettings:
        return self._settings

    @property
    def state(self) -> "ConnectionState":
        return self._lifecycle.state

    def add_listener(self, listener: "LifecycleListener") -> None:
        self._lifecycle.add_listener(listener)

    def remove_listener(self, listener: "LifecycleListener") -> None:
        self._lifecycle.remove_listener(listener)

    def subscriptions(self) -> list[str]:
        """Topics with an active callback, for diagnostics."""
        return sorted(self._registry.callbacks())

    # Host lifecycle signals

    async def ready(self) -> None:
        await self.connect()

    async def dispose(self) -> None:
        await self.close()

    async def __aenter__(self) -> t.Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: t.Any, exc_val: t.Any, exc_tb: t.Any) -> None:
        await self.close()

    # Batch operations

    async def subscribe_many(self, topics: list[str], callback: ListenerFunc) -> None:
        await run_batch(
            "subscribe",
            [self.subscribe(topic, callback) for topic in topics],
        )

    async def unsubscribe_many(self, topics: list[str]) -> None:
        await run_batch("unsubscribe", [self.unsubscribe(topic) for topic in topics])

    async def publish_many(self, topic: str, payloads: list[t.Any]) -> None:
        await run_batch(
            "publish",
            [self.publish(topic, payload) for payload in payloads],
        )

    # Capabilities

    def get_capabilities(self) -> set[AdapterCapability]:
        metadata = getattr(sys.modules[type(self).__module__], "MODULE_METADATA", None)
        if metadata is None:
            return set()
        return set(metadata.capabilities)

    def has_capability(self, capability: AdapterCapability) -> bool:
        return capability in self.get_capabilities()

    # Health

    async def health_check(self) -> dict[str, t.Any]:
        return {
            "backend": self.backend,
            "healthy": self._lifecycle.is_connected,
            "state": self._lifecycle.state.value,
            "endpoint": self._lifecycle.endpoint,
            "subscriptions": self.subscriptions(),
            "handles": len(self._registry),
            "capabilities": sorted(c.value for c in self.get_capabilities()),
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }

    # Payload helpers

    def _encode(self, payload: t.Any) -> bytes:
        try:
            return encode_payload(payload, self._settings.encoding)
        except (TypeError, ValueError, OverflowError, msgspec.MsgspecError) as e:
            msg = (
                f"Cannot encode {type(payload).__name__} payload "
                f"as {self._settings.encoding}"
            )
            raise BrokerSerializationError(msg, original_error=e) from e

    def _decode(self, topic: str, body: bytes) -> t.Any:
        """Decode an inbound body; undecodable bodies are delivered raw."""
        try:
            return decode_payload(body, self._settings.encoding)
        except msgspec.DecodeError as e:
            self.logger.debug(f"Delivering undecodable message on {topic} raw: {e}")
            return body

    async def _dispatch(
        self,
        callback: ListenerFunc,
        payload: t.Any,
        metadata: dict[str, t.Any],
    ) -> None:
        result = callback(payload, metadata)
        if isawaitable(result):
            await result
