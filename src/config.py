"""Engine configuration management.

Configuration is layered, lowest precedence first:
- built-in defaults (EngineConfig field defaults)
- converge.yaml: `defaults:` section next to the document (or in the cwd)
- environment: CONVERGE_STATE_DIR, CONVERGE_PARALLELISM, CONVERGE_ON_ERROR
- CLI flags (applied by the caller after load_engine_config)

State files live under {state_dir}/{document}/state.json. The default
state_dir is .states/ in the document's directory.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


CONFIG_FILENAME = 'converge.yaml'

ON_ERROR_CHOICES = ('continue', 'stop')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class EngineConfig:
    """Runtime settings for plan/apply.

    Attributes:
        base_dir: Directory relative paths are resolved against
        state_dir: Root directory for per-document state files
        parallelism: Max concurrent provider operations
        on_error: 'continue' keeps independent branches going, 'stop' halts scheduling
        refresh: Read actual state back from providers before planning
        config_file: Path of the converge.yaml that was loaded, if any
    """
    base_dir: Path = field(default_factory=Path.cwd)
    state_dir: Optional[Path] = None
    parallelism: int = 4
    on_error: str = 'continue'
    refresh: bool = True
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.base_dir, str):
            self.base_dir = Path(self.base_dir)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if self.state_dir is None:
            self.state_dir = self.base_dir / '.states'
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a setting is out of range
        """
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.on_error not in ON_ERROR_CHOICES:
            raise ConfigError(
                f"on_error must be one of {', '.join(ON_ERROR_CHOICES)}, got '{self.on_error}'"
            )

    def state_path(self, document_name: str) -> Path:
        """Default state file location for a document."""
        return self.state_dir / document_name / 'state.json'

    def cloud_dir(self) -> Path:
        """Directory for the local cloud backend's data."""
        return self.state_dir / '.cloud'


def parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping
    """
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def find_config_file(search_dirs: list[Path]) -> Optional[Path]:
    """Return the first converge.yaml found in search_dirs."""
    for directory in search_dirs:
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def _env_int(name: str) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or value == '':
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name}={value} is not an integer")


def load_engine_config(document_dir: Optional[Path] = None) -> EngineConfig:
    """Load engine configuration for a document directory.

    Args:
        document_dir: Directory holding the desired-state document. Used as
            base_dir and searched first for converge.yaml.

    Returns:
        EngineConfig with file and environment overrides applied

    Raises:
        ConfigError: If a value is invalid
    """
    base_dir = Path(document_dir) if document_dir else Path.cwd()
    search = [base_dir]
    if Path.cwd() != base_dir:
        search.append(Path.cwd())

    defaults: dict = {}
    config_file = find_config_file(search)
    if config_file is not None:
        defaults = parse_yaml(config_file).get('defaults', {}) or {}

    state_dir: Optional[Path] = None
    if raw := defaults.get('state_dir'):
        state_dir = Path(raw)
        if not state_dir.is_absolute():
            state_dir = config_file.parent / state_dir  # type: ignore[union-attr]

    parallelism = int(defaults.get('parallelism', 4))
    on_error = str(defaults.get('on_error', 'continue'))
    refresh = bool(defaults.get('refresh', True))

    # Environment overrides
    if env_state := os.environ.get('CONVERGE_STATE_DIR'):
        state_dir = Path(env_state)
    if (env_parallelism := _env_int('CONVERGE_PARALLELISM')) is not None:
        parallelism = env_parallelism
    if env_on_error := os.environ.get('CONVERGE_ON_ERROR'):
        on_error = env_on_error

    return EngineConfig(
        base_dir=base_dir,
        state_dir=state_dir,
        parallelism=parallelism,
        on_error=on_error,
        refresh=refresh,
        config_file=config_file,
    )
