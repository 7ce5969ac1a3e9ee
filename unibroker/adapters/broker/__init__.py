"""Unified publish/subscribe adapters.

``create_broker`` resolves an adapter by name (``amqp``, ``mqtt``, ``redis``,
``memory``) and builds it with its own settings class. The backend modules
are imported on first use, so only the selected transport library has to be
installed.
"""

from pathlib import Path

import typing as t
from anyio import Path as AsyncPath

from unibroker.adapters import get_adapter_class, get_adapter_module, list_adapters
from unibroker.config import load_config

from ._base import (
    BrokerBatchError,
    BrokerClosedError,
    BrokerConnectionError,
    BrokerDeliveryError,
    BrokerException,
    BrokerMixin,
    BrokerProtocol,
    BrokerProtocolError,
    BrokerSerializationError,
    BrokerSettings,
    BrokerTimeoutError,
    ListenerFunc,
)
from ._lifecycle import ConnectionLifecycle, ConnectionState, LifecycleEvent, StateChange
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
    "ConnectionLifecycle",
    "ConnectionState",
    "LifecycleEvent",
    "ListenerFunc",
    "StateChange",
    "TopicRegistry",
    "available_adapters",
    "create_broker",
    "create_broker_from_config",
    "get_settings_class",
]


def get_settings_class(adapter: str) -> type[BrokerSettings]:
    module = get_adapter_module("broker", adapter)
    return t.cast(type[BrokerSettings], getattr(module, module.MODULE_METADATA.settings_class))


def create_broker(
    adapter: str,
    settings: BrokerSettings | dict[str, t.Any] | None = None,
    **values: t.Any,
) -> t.Any:
    """Build the ``adapter`` broker.

    ``settings`` may be a ready settings instance or a mapping; keyword
    ``values`` override mapping entries. Missing fields fall back to
    ``UNIBROKER_*`` environment variables, then defaults.

    Raises:
        AdapterNotFound: unknown adapter name
        pydantic.ValidationError: invalid settings
    """
    broker_class = get_adapter_class("broker", adapter)
    if not isinstance(settings, BrokerSettings):
        settings_class = get_settings_class(adapter)
        settings = settings_class(**(settings or {}) | values)
    elif values:
        settings = type(settings)(**settings.model_dump() | values)
    return broker_class(settings)


async def create_broker_from_config(path: AsyncPath | Path | str) -> t.Any:
    """Build the broker described by a YAML config file."""
    config = await load_config(path)
    return create_broker(config.adapter, config.settings)


def available_adapters() -> list[str]:
    return list_adapters("broker")
