"""Provider plugins and the capability interface the engine uses."""

from providers.base import (
    PluginRegistry,
    ProviderInstances,
    ProviderPlugin,
    Resource,
    ResourceProvider,
    ResourceSchema,
)
from providers.http import HttpProvider
from providers.local import LocalProvider
from providers.null import NullProvider
from providers.random import RandomProvider

BUNDLED_PROVIDERS = [NullProvider, RandomProvider, LocalProvider, HttpProvider]


def default_registry() -> PluginRegistry:
    """Registry with the bundled providers installed."""
    registry = PluginRegistry()
    for plugin in BUNDLED_PROVIDERS:
        registry.register(plugin)
    return registry


__all__ = [
    'PluginRegistry',
    'ProviderInstances',
    'ProviderPlugin',
    'Resource',
    'ResourceProvider',
    'ResourceSchema',
    'HttpProvider',
    'LocalProvider',
    'NullProvider',
    'RandomProvider',
    'BUNDLED_PROVIDERS',
    'default_registry',
]
