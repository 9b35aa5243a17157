"""Engine configuration management.

Settings are loaded from landform.yaml in the working directory. Every
setting has a default, so the file is optional.

Working directory resolution:
1. Explicit --chdir argument
2. $LANDFORM_WORKDIR environment variable
3. Current directory

Environment overrides (applied after the file):
- LANDFORM_PARALLELISM
- LANDFORM_OPERATION_TIMEOUT
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from errors import ConfigurationError

logger = logging.getLogger(__name__)

SETTINGS_FILE = 'landform.yaml'
DEFAULT_PARALLELISM = 10


class ConfigError(ConfigurationError):
    """Configuration error."""

    def __init__(self, message: str):
        super().__init__("E100", message)


@dataclass
class EngineConfig:
    """Settings for one working directory.

    Relative paths are resolved against workdir.

    Attributes:
        workdir: Working directory holding configuration and state
        parallelism: Maximum concurrent provider operations
        operation_timeout: Seconds before a provider operation is abandoned (None = no limit)
        refresh: Read live objects through providers before planning
        state_path: State document location
        lock_file: Provider lock file location
        config_file: Desired configuration document
        report_dir: Directory for apply reports
        registry_url: Provider registry base URL (None = installed plugins only)
        plugin_namespace: Registry namespace for provider names without a source
    """
    workdir: Path
    parallelism: int = DEFAULT_PARALLELISM
    operation_timeout: Optional[float] = None
    refresh: bool = True
    state_path: Path = Path('.landform/state.json')
    lock_file: Path = Path('.landform.lock.yaml')
    config_file: Path = Path('main.yaml')
    report_dir: Path = Path('.landform/reports')
    registry_url: Optional[str] = None
    plugin_namespace: str = 'landform'

    def __post_init__(self):
        self.workdir = Path(self.workdir)
        for name in ('state_path', 'lock_file', 'config_file', 'report_dir'):
            value = Path(getattr(self, name))
            if not value.is_absolute():
                value = self.workdir / value
            setattr(self, name, value)

        if isinstance(self.parallelism, bool) or not isinstance(self.parallelism, int):
            raise ConfigError(f"parallelism must be an integer, got {self.parallelism!r}")
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be at least 1, got {self.parallelism}")
        if self.operation_timeout is not None:
            self.operation_timeout = float(self.operation_timeout)
            if self.operation_timeout <= 0:
                raise ConfigError("operation_timeout must be positive")

    @property
    def data_dir(self) -> Path:
        """Directory holding state and reports."""
        return self.state_path.parent


def get_workdir(override: Optional[str] = None) -> Path:
    """Discover the working directory (see module docstring for order)."""
    if override:
        path = Path(override)
    elif env_path := os.environ.get('LANDFORM_WORKDIR'):
        path = Path(env_path)
    else:
        path = Path.cwd()

    if not path.is_dir():
        raise ConfigError(f"Working directory does not exist: {path}")
    return path.resolve()


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def _env_overrides() -> dict:
    """Collect LANDFORM_* environment overrides."""
    overrides: dict = {}
    if value := os.environ.get('LANDFORM_PARALLELISM'):
        try:
            overrides['parallelism'] = int(value)
        except ValueError:
            raise ConfigError(f"LANDFORM_PARALLELISM must be an integer, got '{value}'")
    if value := os.environ.get('LANDFORM_OPERATION_TIMEOUT'):
        try:
            overrides['operation_timeout'] = float(value)
        except ValueError:
            raise ConfigError(f"LANDFORM_OPERATION_TIMEOUT must be a number, got '{value}'")
    return overrides


def load_engine_config(workdir: Optional[str] = None, **overrides) -> EngineConfig:
    """Load settings for a working directory.

    Merge order: defaults -> landform.yaml -> environment -> overrides.
    Overrides with value None are ignored.

    Raises:
        ConfigError: On unknown keys or invalid values
    """
    root = get_workdir(workdir)
    settings: dict = {}

    settings_file = root / SETTINGS_FILE
    if settings_file.exists():
        settings = _parse_yaml(settings_file)
        logger.debug(f"Loaded settings from {settings_file}")

    known = set(EngineConfig.__dataclass_fields__) - {'workdir'}
    unknown = set(settings) - known
    if unknown:
        raise ConfigError(f"Unknown settings in {settings_file}: {', '.join(sorted(unknown))}")

    settings.update(_env_overrides())
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return EngineConfig(workdir=root, **settings)
