"""Error taxonomy for the provisioning engine.

Every error carries a short code and a message, mirroring how the CLI
reports failures:

- E1xx ConfigurationError: fatal before any provider call
- E2xx PlanError: fatal before the executor runs
- E3xx ExecutionError: local to a single node
- E4xx ConcurrencyError: fatal for the whole plan+apply cycle
"""

from typing import Optional


class LandformError(Exception):
    """Base exception for engine errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ConfigurationError(LandformError):
    """Invalid configuration, references, versions or persisted state."""


class CycleDetected(ConfigurationError):
    """Reference cycle between objects."""

    def __init__(self, addresses: list[str]):
        self.addresses = list(addresses)
        super().__init__("E101", f"Cycle detected: {' -> '.join(self.addresses)}")


class UnresolvedReference(ConfigurationError):
    """Reference to an address with neither a desired object nor state."""

    def __init__(self, address: str, target: str):
        self.address = address
        self.target = target
        super().__init__(
            "E102", f"'{address}' references undeclared object '{target}'")


class ConstraintUnsatisfiable(ConfigurationError):
    """No available provider version satisfies the constraint set."""

    def __init__(self, provider: str, constraints: list[str], reason: str = ''):
        self.provider = provider
        self.constraints = list(constraints)
        detail = ', '.join(self.constraints) if self.constraints else '(none)'
        message = f"No version of provider '{provider}' satisfies: {detail}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__("E103", message)


class InvalidVersion(ConfigurationError):
    """Unparseable version literal."""

    def __init__(self, text: str):
        super().__init__("E104", f"Invalid version: '{text}'")


class InvalidConstraint(ConfigurationError):
    """Unparseable version constraint."""

    def __init__(self, text: str):
        super().__init__("E105", f"Invalid version constraint: '{text}'")


class StateFormatError(ConfigurationError):
    """State document with an unrecognized shape or format version."""

    def __init__(self, message: str):
        super().__init__("E106", message)


class UnknownResourceType(ConfigurationError):
    """Resource type not offered by its provider."""

    def __init__(self, provider: str, type_name: str):
        self.provider = provider
        self.type_name = type_name
        super().__init__(
            "E107", f"Provider '{provider}' does not support resource type '{type_name}'")


class ChecksumMismatch(ConfigurationError):
    """Locked provider checksums do not match the available package."""

    def __init__(self, provider: str, version: str):
        super().__init__(
            "E108",
            f"Checksums recorded in the lock file for {provider} {version} "
            f"do not match the available package")


class RegistryError(ConfigurationError):
    """Provider registry could not be queried."""

    def __init__(self, message: str):
        super().__init__("E109", message)


class UnknownProvider(ConfigurationError):
    """Provider name or version not available in the plugin registry."""

    def __init__(self, provider: str, version: Optional[str] = None):
        self.provider = provider
        self.version = version
        if version:
            message = f"Provider '{provider}' version {version} is not installed"
        else:
            message = f"Provider '{provider}' is not installed"
        super().__init__("E110", message)


class AddressConflict(ConfigurationError):
    """Rename or move onto an address that is already in use."""

    def __init__(self, source: str, target: str):
        super().__init__(
            "E111", f"Cannot move '{source}' to '{target}': target already exists in state")


class PlanError(LandformError):
    """Plan cannot be carried out."""


class DestroyForbidden(PlanError):
    """Plan would destroy or replace an object with prevent_destroy set."""

    def __init__(self, addresses: list[str]):
        self.addresses = sorted(addresses)
        super().__init__(
            "E201",
            "Plan would destroy objects protected by prevent_destroy: "
            + ', '.join(self.addresses))


class ExecutionError(LandformError):
    """Failure of a single node's provider operation."""


class ProviderError(ExecutionError):
    """Provider operation failed."""

    def __init__(self, message: str, code: str = "E301"):
        super().__init__(code, message)


class ResourceNotFound(ExecutionError):
    """Provider reports the object no longer exists."""

    def __init__(self, message: str):
        super().__init__("E302", message)


class OperationTimeout(ExecutionError):
    """Provider operation did not return in time; outcome unknown."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            "E303", f"{operation} timed out after {timeout}s; outcome unknown - verify manually")


class UnknownValue(ExecutionError):
    """Attribute value still unknown when the node is about to run."""

    def __init__(self, address: str, attributes: list[str]):
        self.address = address
        self.attributes = list(attributes)
        super().__init__(
            "E304", f"{address}: values still unknown after dependencies completed: "
            + ", ".join(self.attributes))


class ConcurrencyError(LandformError):
    """State lock conflicts and optimistic write mismatches."""


class AlreadyLocked(ConcurrencyError):
    """State lock held by another run."""

    def __init__(self, holder: Optional[dict] = None):
        self.holder = holder or {}
        detail = ''
        if self.holder:
            detail = (f" (lock {self.holder.get('id', '?')} held by "
                      f"{self.holder.get('who', '?')} for "
                      f"{self.holder.get('operation', '?')} since "
                      f"{self.holder.get('created', '?')})")
        super().__init__("E401", f"State is locked by another run{detail}")


class ConcurrentModification(ConcurrencyError):
    """Write with an expected serial that does not match the stored one."""

    def __init__(self, address: str, expected: int, actual: int):
        self.address = address
        self.expected = expected
        self.actual = actual
        super().__init__(
            "E402",
            f"State for '{address}' changed concurrently "
            f"(expected serial {expected}, found {actual})")


class NotLocked(ConcurrencyError):
    """State mutation attempted without holding the lock."""

    def __init__(self, message: str = "State mutation requires the state lock"):
        super().__init__("E403", message)


class StalePlan(ConcurrencyError):
    """Plan computed against a state document that has since changed."""

    def __init__(self, planned: int, actual: int):
        self.planned = planned
        self.actual = actual
        super().__init__(
            "E404",
            f"State changed since the plan was made (planned against serial "
            f"{planned}, now {actual}); re-run plan")
