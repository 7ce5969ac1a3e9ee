"""unibroker: one publish/subscribe contract over AMQP, MQTT and Redis."""

from .adapters.broker import (
    BrokerBatchError,
    BrokerClosedError,
    BrokerConnectionError,
    BrokerDeliveryError,
    BrokerException,
    BrokerProtocol,
    BrokerProtocolError,
    BrokerSerializationError,
    BrokerSettings,
    BrokerTimeoutError,
    ConnectionState,
    LifecycleEvent,
    StateChange,
    available_adapters,
    create_broker,
    create_broker_from_config,
)
from .config import load_config
from .logger import configure_logging

__version__ = "0.1.0"

__all__ = [
    "BrokerBatchError",
    "BrokerClosedError",
    "BrokerConnectionError",
    "BrokerDeliveryError",
    "BrokerException",
    "BrokerProtocol",
    "BrokerProtocolError",
    "BrokerSerializationError",
    "BrokerSettings",
    "BrokerTimeoutError",
    "ConnectionState",
    "LifecycleEvent",
    "StateChange",
    "__version__",
    "available_adapters",
    "configure_logging",
    "create_broker",
    "create_broker_from_config",
    "load_config",
]
