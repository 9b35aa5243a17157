"""Provider lock file.

Records the exact provider versions selected by the resolver so later runs
reproduce them. Stored as YAML:

    providers:
      random:
        version: 1.2.0
        constraints: ~> 1.2
        checksums:
          - sha256:...
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from errors import ConfigurationError
from resolver.version import Version

logger = logging.getLogger(__name__)

LOCK_HEADER = "# Maintained by landform. Commit this file; do not edit by hand.\n"


@dataclass
class LockEntry:
    """Resolved version of one provider.

    Attributes:
        provider: Provider name
        version: Exact selected version
        constraints: Constraint set the version was resolved from
        checksums: Package checksums (sorted, de-duplicated)
    """
    provider: str
    version: Version
    constraints: str = ''
    checksums: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.version = Version.parse(self.version)
        self.checksums = sorted(set(self.checksums))

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'version': str(self.version)}
        if self.constraints:
            d['constraints'] = self.constraints
        if self.checksums:
            d['checksums'] = list(self.checksums)
        return d

    @classmethod
    def from_dict(cls, provider: str, data: dict) -> 'LockEntry':
        if not isinstance(data, dict) or 'version' not in data:
            raise ConfigurationError("E100", f"Lock entry for '{provider}' is missing a version")
        return cls(
            provider=provider,
            version=Version.parse(str(data['version'])),
            constraints=data.get('constraints', ''),
            checksums=list(data.get('checksums', [])),
        )


def entries_to_dict(entries: dict[str, LockEntry]) -> dict:
    """Serialize lock entries keyed by provider name (sorted)."""
    return {name: entries[name].to_dict() for name in sorted(entries)}


def entries_from_dict(data: Optional[dict]) -> dict[str, LockEntry]:
    """Deserialize lock entries keyed by provider name."""
    return {name: LockEntry.from_dict(name, value) for name, value in (data or {}).items()}


class LockFile:
    """Load and save the provider lock file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, LockEntry]:
        """Load lock entries. A missing file means no entries.

        Raises:
            ConfigurationError: If the file is not a valid lock file
        """
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError("E100", f"Invalid YAML in lock file {self.path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError("E100", f"Lock file {self.path} must be a YAML object (dict)")
        return entries_from_dict(data.get('providers'))

    def save(self, entries: dict[str, LockEntry]) -> Path:
        """Write lock entries."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        body = yaml.safe_dump({'providers': entries_to_dict(entries)}, sort_keys=False, default_flow_style=False)
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write(LOCK_HEADER)
            f.write(body)
        logger.debug(f"Saved lock file to {self.path}")
        return self.path

    def update(self, entries: dict[str, LockEntry]) -> bool:
        """Write entries only if they differ from the current file.

        Returns:
            True if the file was written
        """
        if self.load() == entries:
            logger.debug("Lock file unchanged")
            return False
        self.save(entries)
        logger.info(f"Updated provider lock file {self.path}")
        return True
