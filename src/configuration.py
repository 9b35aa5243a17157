"""Configuration document loading.

A configuration document is already-structured YAML or JSON describing the
desired objects, provider configurations, provider version requirements and
moved renames. Attribute values may contain markers:

    {$ref: "random_id.a.hex"}   reference to another object's attribute
    {$unknown: true}            value only known after apply
    {$count: index}             expansion index (count)
    {$each: key} / {$each: value}  expansion key/value (for_each)

Resources declared inside a module are addressed module.<name>.<type>.<name>
and reference siblings by their unprefixed address.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from common import (
    PROVIDER_PREFIX,
    UNKNOWN,
    Reference,
    default_provider_for_type,
    instance_address,
    provider_address,
    provider_name,
    split_address,
    walk_references,
)
from config import ConfigError
from errors import LandformError
from resolver.version import ConstraintSet

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')
_LIFECYCLE_KEYS = {'create_before_destroy', 'prevent_destroy', 'ignore_changes'}
_RESOURCE_KEYS = {'type', 'name', 'count', 'for_each', 'attributes', 'provider', 'depends_on', 'lifecycle'}


@dataclass(frozen=True)
class Lifecycle:
    """Lifecycle policy of a declared object.

    Attributes:
        create_before_destroy: Replace by creating the new object first
        prevent_destroy: Refuse any plan that destroys or replaces the object
        ignore_changes: Attributes excluded from diffing
        ignore_all_changes: ignore_changes: all (only create/destroy)
    """
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: frozenset = frozenset()
    ignore_all_changes: bool = False

    def ignores(self, attribute: str) -> bool:
        return self.ignore_all_changes or attribute in self.ignore_changes

    @classmethod
    def from_dict(cls, data: Optional[dict], where: str = '') -> 'Lifecycle':
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(f"{where}: lifecycle must be a mapping")
        unknown = set(data) - _LIFECYCLE_KEYS
        if unknown:
            raise ConfigError(f"{where}: unknown lifecycle settings: {', '.join(sorted(unknown))}")

        ignore = data.get('ignore_changes') or []
        ignore_all = False
        if ignore == 'all':
            ignore_all = True
            ignore = []
        elif not isinstance(ignore, list) or not all(isinstance(a, str) for a in ignore):
            raise ConfigError(f"{where}: ignore_changes must be a list of attribute names or 'all'")

        for key in ('create_before_destroy', 'prevent_destroy'):
            if not isinstance(data.get(key, False), bool):
                raise ConfigError(f"{where}: lifecycle.{key} must be true or false")

        return cls(
            create_before_destroy=data.get('create_before_destroy', False),
            prevent_destroy=data.get('prevent_destroy', False),
            ignore_changes=frozenset(ignore),
            ignore_all_changes=ignore_all,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.create_before_destroy:
            d['create_before_destroy'] = True
        if self.prevent_destroy:
            d['prevent_destroy'] = True
        if self.ignore_all_changes:
            d['ignore_changes'] = 'all'
        elif self.ignore_changes:
            d['ignore_changes'] = sorted(self.ignore_changes)
        return d


@dataclass
class DeclaredObject:
    """One desired infrastructure object (a single expansion instance).

    Attributes:
        address: Unique address, e.g. module.net.random_id.suffix[0]
        type: Resource type, e.g. random_id
        name: Local name
        attributes: Attribute map (literals, References, UNKNOWN)
        lifecycle: Lifecycle policy
        provider: Provider configuration address servicing the object
        depends_on: Explicit ordering hints (addresses)
        module: Module address prefix ('' for the root module)
        index: Expansion key (count index or for_each key)
    """
    address: str
    type: str
    name: str
    attributes: dict = field(default_factory=dict)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    provider: str = ''
    depends_on: list[str] = field(default_factory=list)
    module: str = ''
    index: Any = None

    def __post_init__(self):
        if not self.provider:
            self.provider = default_provider_for_type(self.type)

    @property
    def base_address(self) -> str:
        """Address without the expansion key."""
        prefix = f'{self.module}.' if self.module else ''
        return f'{prefix}{self.type}.{self.name}'

    @property
    def references(self) -> list[Reference]:
        return list(walk_references(self.attributes))


@dataclass
class ProviderConfig:
    """A configured provider instance.

    Attributes:
        name: Provider name (random, http, ...)
        alias: Optional alias for additional configurations
        attributes: Provider configuration values (may contain References)
    """
    name: str
    alias: Optional[str] = None
    attributes: dict = field(default_factory=dict)

    @property
    def address(self) -> str:
        return provider_address(self.name, self.alias)

    @property
    def references(self) -> list[Reference]:
        return list(walk_references(self.attributes))


@dataclass
class ProviderRequirement:
    """Version requirement for one provider, merged across modules."""
    name: str
    source: Optional[str] = None
    constraints: ConstraintSet = field(default_factory=ConstraintSet)


@dataclass
class Configuration:
    """Fully structured desired configuration.

    Attributes:
        objects: Address -> DeclaredObject (declaration order)
        providers: Provider address -> ProviderConfig (explicit and implicit)
        requirements: Provider name -> ProviderRequirement
        moved: Old address -> new address
        source_path: Where the document was loaded from
    """
    objects: dict[str, DeclaredObject] = field(default_factory=dict)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    requirements: dict[str, ProviderRequirement] = field(default_factory=dict)
    moved: dict[str, str] = field(default_factory=dict)
    source_path: Optional[Path] = None

    def get(self, address: str) -> Optional[DeclaredObject]:
        return self.objects.get(address)

    @property
    def addresses(self) -> list[str]:
        return list(self.objects)

    def provider_names(self) -> list[str]:
        """Every provider name used or required, sorted."""
        names = set(self.requirements)
        names.update(provider_name(p) for p in self.providers)
        names.update(provider_name(o.provider) for o in self.objects.values())
        return sorted(names)

    def constraint_sets(self) -> dict[str, ConstraintSet]:
        """Provider name -> merged ConstraintSet (empty means any version)."""
        result: dict[str, ConstraintSet] = {}
        for name in self.provider_names():
            requirement = self.requirements.get(name)
            result[name] = requirement.constraints if requirement else ConstraintSet()
        return result

    def source_of(self, name: str) -> str:
        """Registry source of a provider (defaults to its name)."""
        requirement = self.requirements.get(name)
        if requirement and requirement.source:
            return requirement.source
        return name

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Configuration':
        """Build a Configuration from a parsed document.

        Raises:
            ConfigError: If the document is invalid
        """
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping")
        unknown = set(data) - {'required_providers', 'providers', 'resources', 'modules', 'moved'}
        if unknown:
            raise ConfigError(f"Unknown top-level keys: {', '.join(sorted(unknown))}")

        configuration = cls(source_path=source_path)
        for item in data.get('providers') or []:
            configuration._add_provider(item)
        configuration._load_block(data, prefix='')
        configuration.moved = _parse_moved(data.get('moved'))

        # Implicit empty configuration for default providers nobody configured
        for obj in configuration.objects.values():
            if obj.provider not in configuration.providers:
                name = provider_name(obj.provider)
                if obj.provider != provider_address(name):
                    raise ConfigError(
                        f"{obj.address}: provider configuration '{obj.provider}' is not declared")
                configuration.providers[obj.provider] = ProviderConfig(name=name)

        logger.debug(
            f"Loaded configuration: {len(configuration.objects)} objects, "
            f"{len(configuration.providers)} provider configurations")
        return configuration

    def _add_provider(self, item: Any) -> None:
        if not isinstance(item, dict) or 'name' not in item:
            raise ConfigError("Provider configuration requires 'name'")
        name, alias = item['name'], item.get('alias')
        if not _NAME_RE.match(str(name)) or (alias is not None and not _NAME_RE.match(str(alias))):
            raise ConfigError(f"Invalid provider name or alias: {name!r} {alias!r}")
        config = item.get('config') or {}
        if not isinstance(config, dict):
            raise ConfigError(f"provider '{name}': config must be a mapping")
        provider = ProviderConfig(name=name, alias=alias, attributes=_decode(config, _Scope(), f'provider.{name}'))
        if provider.address in self.providers:
            raise ConfigError(f"Duplicate provider configuration: {provider.address}")
        self.providers[provider.address] = provider

    def _add_requirements(self, data: Any, where: str) -> None:
        if not data:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"{where}: required_providers must be a mapping")
        for name, value in data.items():
            if isinstance(value, dict):
                source, version = value.get('source'), value.get('version')
            else:
                source, version = None, value
            try:
                constraints = ConstraintSet.parse(version)
            except LandformError as e:
                raise ConfigError(f"{where}: provider '{name}': {e.message}")

            existing = self.requirements.get(name)
            if existing is None:
                self.requirements[name] = ProviderRequirement(name, source, constraints)
                continue
            if source and existing.source and source != existing.source:
                raise ConfigError(
                    f"{where}: provider '{name}' source '{source}' conflicts with '{existing.source}'")
            existing.source = existing.source or source
            existing.constraints = existing.constraints.merge(constraints)

    def _load_block(self, data: dict, prefix: str) -> None:
        where = prefix or 'root module'
        self._add_requirements(data.get('required_providers'), where)

        for item in data.get('resources') or []:
            for obj in _expand_resource(item, prefix):
                if obj.address in self.objects:
                    raise ConfigError(f"Duplicate resource address: {obj.address}")
                self.objects[obj.address] = obj

        names: set[str] = set()
        for module in data.get('modules') or []:
            if not isinstance(module, dict) or not _NAME_RE.match(str(module.get('name', ''))):
                raise ConfigError(f"{where}: module requires a valid 'name'")
            if module['name'] in names:
                raise ConfigError(f"{where}: duplicate module '{module['name']}'")
            names.add(module['name'])
            child = f"{prefix}.module.{module['name']}" if prefix else f"module.{module['name']}"
            self._load_block(module, child)


@dataclass
class _Scope:
    """Values available to expansion markers."""
    prefix: str = ''
    index: Optional[int] = None
    each_key: Any = None
    each_value: Any = None
    has_each: bool = False


def _decode(value: Any, scope: _Scope, where: str) -> Any:
    """Replace markers with References, UNKNOWN and expansion values."""
    if isinstance(value, dict):
        if len(value) == 1:
            marker, arg = next(iter(value.items()))
            if marker == '$ref':
                try:
                    return Reference.parse(str(arg)).with_prefix(scope.prefix)
                except LandformError as e:
                    raise ConfigError(f"{where}: {e.message}")
            if marker == '$unknown':
                return UNKNOWN
            if marker == '$count':
                if scope.index is None:
                    raise ConfigError(f"{where}: $count used without count")
                return scope.index
            if marker == '$each':
                if not scope.has_each:
                    raise ConfigError(f"{where}: $each used without for_each")
                if arg not in ('key', 'value'):
                    raise ConfigError(f"{where}: $each must be 'key' or 'value'")
                return scope.each_key if arg == 'key' else scope.each_value
        return {k: _decode(v, scope, where) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v, scope, where) for v in value]
    return value


def _normalize_provider(value: Optional[str], type_name: str, where: str) -> str:
    if not value:
        return default_provider_for_type(type_name)
    value = str(value)
    if not value.startswith(PROVIDER_PREFIX):
        value = PROVIDER_PREFIX + value
    parts = value[len(PROVIDER_PREFIX):].split('.')
    if len(parts) > 2 or not all(_NAME_RE.match(p) for p in parts):
        raise ConfigError(f"{where}: invalid provider reference '{value}'")
    return value


def _normalize_depends_on(values: Any, prefix: str, where: str) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise ConfigError(f"{where}: depends_on must be a list of addresses")
    result = []
    for value in values:
        value = str(value)
        try:
            split_address(value)
        except LandformError as e:
            raise ConfigError(f"{where}: {e.message}")
        if prefix and not value.startswith('module.'):
            value = f'{prefix}.{value}'
        result.append(value)
    return result


def _expand_resource(item: Any, prefix: str) -> list[DeclaredObject]:
    """Expand one resource block into its instances."""
    if not isinstance(item, dict):
        raise ConfigError(f"{prefix or 'root module'}: resource must be a mapping")
    for key in ('type', 'name'):
        if key not in item:
            raise ConfigError(f"{prefix or 'root module'}: resource missing required field: {key}")
    type_name, name = str(item['type']), str(item['name'])
    base = f'{prefix}.{type_name}.{name}' if prefix else f'{type_name}.{name}'
    if not _NAME_RE.match(type_name) or not _NAME_RE.match(name):
        raise ConfigError(f"Invalid resource type or name: {base}")
    unknown = set(item) - _RESOURCE_KEYS
    if unknown:
        raise ConfigError(f"{base}: unknown keys: {', '.join(sorted(unknown))}")

    attributes = item.get('attributes') or {}
    if not isinstance(attributes, dict):
        raise ConfigError(f"{base}: attributes must be a mapping")

    lifecycle = Lifecycle.from_dict(item.get('lifecycle'), base)
    provider = _normalize_provider(item.get('provider'), type_name, base)
    depends_on = _normalize_depends_on(item.get('depends_on'), prefix, base)

    def make(address: str, scope: _Scope, index: Any) -> DeclaredObject:
        return DeclaredObject(
            address=address,
            type=type_name,
            name=name,
            attributes=_decode(attributes, scope, address),
            lifecycle=lifecycle,
            provider=provider,
            depends_on=list(depends_on),
            module=prefix,
            index=index,
        )

    count, for_each = item.get('count'), item.get('for_each')
    if count is not None and for_each is not None:
        raise ConfigError(f"{base}: count and for_each are mutually exclusive")

    if count is not None:
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ConfigError(f"{base}: count must be a non-negative integer")
        return [make(instance_address(base, i), _Scope(prefix=prefix, index=i), i) for i in range(count)]

    if for_each is not None:
        if isinstance(for_each, list):
            if len(set(map(str, for_each))) != len(for_each):
                raise ConfigError(f"{base}: for_each list contains duplicate keys")
            pairs = [(str(v), v) for v in for_each]
        elif isinstance(for_each, dict):
            pairs = [(str(k), v) for k, v in for_each.items()]
        else:
            raise ConfigError(f"{base}: for_each must be a list or mapping")
        return [
            make(instance_address(base, key),
                 _Scope(prefix=prefix, each_key=key, each_value=value, has_each=True), key)
            for key, value in pairs
        ]

    return [make(base, _Scope(prefix=prefix), None)]


def _parse_moved(data: Any) -> dict[str, str]:
    if not data:
        return {}
    if not isinstance(data, list):
        raise ConfigError("moved must be a list of {from, to} entries")
    moved: dict[str, str] = {}
    for entry in data:
        if not isinstance(entry, dict) or 'from' not in entry or 'to' not in entry:
            raise ConfigError("moved entries require 'from' and 'to'")
        source, target = str(entry['from']), str(entry['to'])
        for address in (source, target):
            try:
                split_address(address)
            except LandformError as e:
                raise ConfigError(f"moved: {e.message}")
        if source == target:
            raise ConfigError(f"moved: '{source}' moved onto itself")
        if source in moved:
            raise ConfigError(f"moved: '{source}' moved more than once")
        moved[source] = target
    return moved


class ConfigurationLoader:
    """Loads configuration documents from YAML or JSON files."""

    def load_file(self, path: Path) -> Configuration:
        """Load a configuration document.

        Raises:
            ConfigError: If the file is missing or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                if path.suffix == '.json':
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in configuration {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in configuration {path}: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration {path} must be a YAML object (dict)")

        return Configuration.from_dict(data, source_path=path)


def load_configuration(path: Path) -> Configuration:
    """Load a configuration document from path."""
    return ConfigurationLoader().load_file(path)
