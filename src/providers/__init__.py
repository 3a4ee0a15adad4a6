"""Provider adapters.

One adapter class per provider family, chosen by the `type` field of the
provider configuration.
"""

from config import ConfigError, ProviderConfig
from providers.base import (
    DEFAULT_TIMEOUT,
    CallContext,
    Credential,
    ProviderAdapter,
    Session,
)
from providers.proxmox import ProxmoxAdapter
from providers.vyos import VyOSAdapter

ADAPTER_TYPES = {
    'proxmox': ProxmoxAdapter,
    'vyos': VyOSAdapter,
}


def build_adapter(config: ProviderConfig) -> ProviderAdapter:
    """Instantiate the adapter for a provider configuration."""
    try:
        adapter_cls = ADAPTER_TYPES[config.type]
    except KeyError:
        raise ConfigError(f"Provider '{config.name}': no adapter for type '{config.type}'")
    return adapter_cls(config)


def build_adapters(configs: dict[str, ProviderConfig]) -> dict[str, ProviderAdapter]:
    return {name: build_adapter(config) for name, config in configs.items()}


__all__ = [
    "ADAPTER_TYPES",
    "DEFAULT_TIMEOUT",
    "CallContext",
    "Credential",
    "ProviderAdapter",
    "ProxmoxAdapter",
    "Session",
    "VyOSAdapter",
    "build_adapter",
    "build_adapters",
]
