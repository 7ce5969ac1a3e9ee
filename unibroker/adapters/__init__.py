from enum import Enum
from importlib import import_module
from uuid import UUID

import typing as t
from pydantic import BaseModel, Field


class AdapterStatus(str, Enum):
    ALPHA = "alpha"
    BETA = "beta"
    STABLE = "stable"
    DEPRECATED = "deprecated"
    EXPERIMENTAL = "experimental"


class AdapterCapability(str, Enum):
    RECONNECTION = "auto_reconnection"
    HEALTH_CHECKS = "health_checks"
    TLS_SUPPORT = "tls_support"

    ASYNC_OPERATIONS = "async_operations"
    BULK_OPERATIONS = "bulk_operations"
    STREAMING = "streaming"

    PUBLISHER_CONFIRMS = "publisher_confirms"
    PATTERN_SUBSCRIBE = "pattern_subscribe"
    WILDCARD_SUBSCRIBE = "wildcard_subscribe"
    PERSISTENCE = "persistence"
    FLOW_CONTROL = "flow_control"


class AdapterMetadata(BaseModel):
    module_id: UUID
    name: str
    category: str
    provider: str | None = None
    version: str = "1.0.0"
    status: AdapterStatus = AdapterStatus.STABLE
    description: str | None = None
    settings_class: str | None = None
    config_example: dict[str, t.Any] | None = None
    capabilities: list[AdapterCapability] = Field(default_factory=list)
    required_packages: list[str] = Field(default_factory=list)


class AdapterNotFound(Exception):
    pass


# category -> provider -> (module, class name)
_registry: dict[str, dict[str, tuple[str, str]]] = {
    "broker": {
        "amqp": ("unibroker.adapters.broker.amqp", "AmqpBroker"),
        "mqtt": ("unibroker.adapters.broker.mqtt", "MqttBroker"),
        "redis": ("unibroker.adapters.broker.redis", "RedisBroker"),
        "memory": ("unibroker.adapters.broker.memory", "MemoryBroker"),
    },
}


def list_adapters(category: str) -> list[str]:
    return sorted(_registry.get(category, {}))


def get_adapter_module(category: str, adapter_name: str) -> t.Any:
    try:
        module_path, _ = _registry[category][adapter_name]
    except KeyError:
        msg = f"No adapter found for category '{category}' and name '{adapter_name}'"
        raise AdapterNotFound(msg) from None
    return import_module(module_path)


def get_adapter_class(category: str, adapter_name: str) -> t.Any:
    """Resolve an adapter class by category and provider name.

    Raises:
        AdapterNotFound: unknown category/provider pair
    """
    module = get_adapter_module(category, adapter_name)
    return getattr(module, _registry[category][adapter_name][1])


def get_adapter_metadata(category: str, adapter_name: str) -> AdapterMetadata:
    module = get_adapter_module(category, adapter_name)
    return t.cast(AdapterMetadata, module.MODULE_METADATA)


def generate_adapter_report(category: str, adapter_name: str) -> str:
    """Generate a simple human-readable report for an adapter."""
    meta = get_adapter_metadata(category, adapter_name)
    caps = [c.value for c in meta.capabilities]
    lines = [
        f"Adapter Report: {meta.name}",
        f"Provider: {meta.provider}",
        f"Category: {meta.category}",
        f"Version: {meta.version}",
        f"Capabilities ({len(caps)}): {', '.join(caps)}",
        f"Dependencies ({len(meta.required_packages)}): "
        f"{', '.join(meta.required_packages)}",
    ]
    return "\n".join(lines)
