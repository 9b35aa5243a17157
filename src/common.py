"""Common utilities and types for the provisioning engine.

Attribute values in a desired object are literals, references to another
object's attribute, or the UNKNOWN placeholder. Values nest freely inside
lists and dicts.
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

from errors import ConfigurationError, LandformError, OperationTimeout, ProviderError

logger = logging.getLogger(__name__)

PROVIDER_PREFIX = 'provider.'


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance: Optional['_Unknown'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """Reference to an attribute of another object.

    Attributes:
        address: Target object address (e.g. random_id.suffix[0])
        path: Attribute path inside the target (e.g. ('tags', 'Name'))
    """
    address: str
    path: tuple[str, ...]

    @property
    def attribute(self) -> str:
        return '.'.join(self.path)

    @classmethod
    def parse(cls, expr: str) -> 'Reference':
        """Parse 'type.name[key].attr' (optionally prefixed by module.<name>.).

        Raises:
            ConfigurationError: If the expression has no attribute part
        """
        parts = split_address(expr)
        pos = 0
        while pos + 1 < len(parts) and parts[pos] == 'module':
            pos += 2
        if parts and parts[0] == 'provider':
            # provider.<name>[.<alias>].<attr> is not a resource reference
            raise ConfigurationError("E100", f"Cannot reference provider configuration: '{expr}'")
        # type + name (name may carry an [index] suffix)
        if len(parts) < pos + 3:
            raise ConfigurationError("E100", f"Invalid reference '{expr}': expected <type>.<name>.<attribute>")
        address = '.'.join(parts[:pos + 2])
        return cls(address=address, path=tuple(parts[pos + 2:]))

    def with_prefix(self, prefix: str) -> 'Reference':
        """Return the reference with a module prefix applied."""
        if not prefix or self.address.startswith('module.'):
            return self
        return Reference(address=f'{prefix}.{self.address}', path=self.path)

    def __str__(self) -> str:
        return f'{self.address}.{self.attribute}'


def split_address(expr: str) -> list[str]:
    """Split a dotted address on dots outside of [...] and quotes."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    quoted = False
    for ch in expr:
        if ch == '"':
            quoted = not quoted
        elif not quoted and ch == '[':
            depth += 1
        elif not quoted and ch == ']':
            depth -= 1
        if ch == '.' and depth == 0 and not quoted:
            parts.append(''.join(current))
            current = []
            continue
        current.append(ch)
    parts.append(''.join(current))
    if any(not p for p in parts):
        raise ConfigurationError("E100", f"Invalid address '{expr}'")
    return parts


def instance_address(base: str, key: Any = None) -> str:
    """Build an expansion instance address: base[0] or base["key"]."""
    if key is None:
        return base
    if isinstance(key, int):
        return f'{base}[{key}]'
    return f'{base}[{json.dumps(str(key))}]'


def instance_key(address: str) -> Any:
    """Expansion key of an instance address: 0, "key", or None."""
    if not (address.endswith(']') and '[' in address):
        return None
    text = address[address.rindex('[') + 1:-1]
    if text.isdigit():
        return int(text)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def base_address(address: str) -> str:
    """Strip a trailing [index] from an instance address."""
    if address.endswith(']') and '[' in address:
        return address[:address.rindex('[')]
    return address


def provider_address(name: str, alias: Optional[str] = None) -> str:
    """Provider configuration address: provider.<name>[.<alias>]."""
    if alias:
        return f'{PROVIDER_PREFIX}{name}.{alias}'
    return f'{PROVIDER_PREFIX}{name}'


def provider_name(address: str) -> str:
    """Provider name from a configuration address (provider.http.west -> http)."""
    if address.startswith(PROVIDER_PREFIX):
        address = address[len(PROVIDER_PREFIX):]
    return address.split('.', 1)[0]


def default_provider_for_type(type_name: str) -> str:
    """Resource types are prefixed by their provider name (random_id -> random)."""
    return provider_address(type_name.split('_', 1)[0])


def walk_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested inside value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from walk_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from walk_references(item)


def substitute(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Return a copy of value with every Reference replaced by resolve(ref)."""
    if isinstance(value, Reference):
        return resolve(value)
    if isinstance(value, dict):
        return {k: substitute(v, resolve) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute(v, resolve) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    """True if UNKNOWN appears anywhere inside value."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def lookup_path(attributes: dict, path: tuple[str, ...], complete: bool = True) -> Any:
    """Follow an attribute path through nested dicts and lists.

    Args:
        attributes: Attribute map of the target object
        path: Attribute path
        complete: When False the map may lack provider-computed values, so a
            missing attribute is UNKNOWN rather than None

    Returns:
        The value at path, UNKNOWN or None
    """
    current: Any = attributes
    for segment in path:
        if current is UNKNOWN:
            return UNKNOWN
        if isinstance(current, dict):
            if segment not in current:
                return None if complete else UNKNOWN
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return None if complete else UNKNOWN
    return current


def call_with_timeout(func: Callable, timeout: Optional[float], *args, operation: str = 'operation', **kwargs) -> Any:
    """Call func, giving up after timeout seconds.

    The call runs on a helper thread so the caller can stop waiting. A call
    that times out keeps running in the background; its outcome is unknown
    and OperationTimeout is raised.
    """
    if timeout is None:
        return func(*args, **kwargs)

    outcome: dict[str, Any] = {}

    def _target():
        try:
            outcome['value'] = func(*args, **kwargs)
        except BaseException as e:  # re-raised on the calling thread
            outcome['error'] = e

    worker = threading.Thread(target=_target, name=f'op-{operation}', daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        logger.warning(f"{operation} still running after {timeout}s")
        raise OperationTimeout(operation, timeout)
    if 'error' in outcome:
        raise outcome['error']
    return outcome.get('value')


def call_provider(operation: str, address: str, func: Callable, *args, timeout: Optional[float] = None) -> Any:
    """Invoke a provider operation with the per-operation timeout.

    Engine errors propagate unchanged; anything else a plugin raises is
    reported as ProviderError.
    """
    try:
        return call_with_timeout(func, timeout, *args, operation=f'{operation} {address}')
    except LandformError:
        raise
    except Exception as e:
        logger.debug(f"{operation} {address} raised", exc_info=True)
        raise ProviderError(f"{operation} {address}: {type(e).__name__}: {e}")
