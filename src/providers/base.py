"""Provider capability interface and plugin registry.

A provider plugin groups resource types under a provider name and version.
Each resource type exposes a ResourceSchema (which attributes are mutable
in place, which force replacement, which are computed by the provider) and
create/read/update/delete operations against an opaque attribute map.

New resource types are added by registering a plugin; the planner never
dispatches on type names.
"""

import hashlib
import logging
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol, Union, runtime_checkable

from common import provider_name
from errors import UnknownProvider, UnknownResourceType
from resolver.version import Version

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSchema:
    """Attribute rules of one resource type.

    Attributes:
        force_new: Attributes whose change forces replacement
        mutable: Attributes updatable in place (None = every attribute not in force_new)
        computed: Attributes set by the provider
        replace_if: Optional check(prior, desired) -> bool for changes that
            are incompatible with update beyond single attributes
    """
    force_new: frozenset = frozenset()
    mutable: Optional[frozenset] = None
    computed: frozenset = frozenset()
    replace_if: Optional[Callable[[dict, dict], bool]] = field(default=None, compare=False)

    def forces_replacement(self, attribute: str) -> bool:
        if attribute in self.force_new:
            return True
        return self.mutable is not None and attribute not in self.mutable

    def requires_replace(self, prior: dict, desired: dict, changed: Iterable[str]) -> bool:
        """True if the changed attributes cannot be applied by update."""
        if any(self.forces_replacement(a) for a in changed):
            return True
        if self.replace_if is not None:
            return bool(self.replace_if(prior, desired))
        return False


@runtime_checkable
class ResourceProvider(Protocol):
    """Operations for one resource type.

    create returns (new_attributes, resource_id). read raises
    ResourceNotFound when the object no longer exists. Failures raise
    ProviderError.
    """
    schema: ResourceSchema

    def create(self, attrs: dict) -> tuple[dict, str]:
        ...

    def read(self, attrs: dict) -> dict:
        ...

    def update(self, old: dict, new: dict) -> dict:
        ...

    def delete(self, attrs: dict) -> None:
        ...


class Resource:
    """Convenience base for resource implementations."""

    schema = ResourceSchema()

    def __init__(self, plugin: 'ProviderPlugin'):
        self.plugin = plugin

    def keep_computed(self, old: dict, new: dict) -> dict:
        """New attributes with computed values carried over from old."""
        result = {k: v for k, v in old.items() if k in self.schema.computed}
        result.update(new)
        return result


class ProviderPlugin:
    """Base class for provider plugins.

    Class attributes:
        name: Provider name (prefix of its resource types)
        version: Plugin version
        resources: Resource type name -> resource class
    """
    name: str = ''
    version: str = '0.0.0'
    resources: dict[str, type] = {}

    def __init__(self):
        self.config: dict = {}
        self.configured = False
        self._instances: dict[str, ResourceProvider] = {}

    def configure(self, attrs: dict) -> None:
        """Accept provider configuration values."""
        self.config = dict(attrs or {})
        self.configured = True

    def resource(self, type_name: str) -> ResourceProvider:
        if type_name not in self.resources:
            raise UnknownResourceType(self.name, type_name)
        if type_name not in self._instances:
            self._instances[type_name] = self.resources[type_name](self)
        return self._instances[type_name]

    def schema(self, type_name: str) -> ResourceSchema:
        if type_name not in self.resources:
            raise UnknownResourceType(self.name, type_name)
        return self.resources[type_name].schema


PluginFactory = Callable[[], ProviderPlugin]


def _checksum(name: str, version: Version, factory: PluginFactory) -> str:
    """sha256 over the plugin's identity and module source."""
    digest = hashlib.sha256(f'{name}:{version}:'.encode())
    module = sys.modules.get(getattr(factory, '__module__', ''))
    source = getattr(module, '__file__', None)
    if source and Path(source).exists():
        digest.update(Path(source).read_bytes())
    else:
        digest.update(getattr(factory, '__qualname__', repr(factory)).encode())
    return f'sha256:{digest.hexdigest()}'


class PluginRegistry:
    """Provider name -> version -> plugin factory."""

    def __init__(self):
        self._factories: dict[str, dict[Version, PluginFactory]] = {}

    def register(
        self,
        factory: PluginFactory,
        name: Optional[str] = None,
        version: Union[str, Version, None] = None,
    ) -> None:
        """Register a plugin class (or factory with explicit name and version)."""
        name = name or getattr(factory, 'name', '')
        version = Version.parse(version or getattr(factory, 'version', '0.0.0'))
        if not name:
            raise ValueError("Plugin registration requires a provider name")
        self._factories.setdefault(name, {})[version] = factory
        logger.debug(f"Registered provider plugin {name} {version}")

    def names(self) -> list[str]:
        return sorted(self._factories)

    def versions(self, name: str) -> list[Version]:
        return sorted(self._factories.get(name, {}))

    def checksums(self, name: str, version: Union[str, Version]) -> list[str]:
        version = Version.parse(version)
        factory = self._factories.get(name, {}).get(version)
        if factory is None:
            raise UnknownProvider(name, str(version))
        return [_checksum(name, version, factory)]

    def available_versions(self, names: Iterable[str]) -> dict[str, dict[str, list[str]]]:
        """Provider name -> {version: checksums} for installed plugins."""
        return {
            name: {str(v): self.checksums(name, v) for v in self.versions(name)}
            for name in names
        }

    def create(self, name: str, version: Union[str, Version]) -> ProviderPlugin:
        """Instantiate a plugin at an exact version.

        Raises:
            UnknownProvider: If the name or version is not registered
        """
        version = Version.parse(version)
        if name not in self._factories:
            raise UnknownProvider(name)
        factory = self._factories[name].get(version)
        if factory is None:
            raise UnknownProvider(name, str(version))
        return factory()


class ProviderInstances:
    """Plugin instances for one run, one per provider configuration address.

    Versions are pinned by the resolver; instances are created lazily and
    shared by every node serviced by the same configuration.
    """

    def __init__(self, registry: PluginRegistry, versions: dict[str, Union[str, Version]]):
        self.registry = registry
        self.versions = {name: Version.parse(v) for name, v in versions.items()}
        self._plugins: dict[str, ProviderPlugin] = {}
        self._lock = threading.Lock()

    def version_of(self, address: str) -> Version:
        name = provider_name(address)
        if name not in self.versions:
            raise UnknownProvider(name)
        return self.versions[name]

    def plugin(self, address: str) -> ProviderPlugin:
        with self._lock:
            if address not in self._plugins:
                name = provider_name(address)
                self._plugins[address] = self.registry.create(name, self.version_of(address))
            return self._plugins[address]

    def configure(self, address: str, attrs: dict) -> None:
        plugin = self.plugin(address)
        logger.debug(f"Configuring {address} ({plugin.name} {plugin.version})")
        plugin.configure(attrs)

    def resource(self, address: str, type_name: str) -> ResourceProvider:
        return self.plugin(address).resource(type_name)

    def schema(self, address: str, type_name: str) -> ResourceSchema:
        return self.plugin(address).schema(type_name)
