"""
Run configuration.

Settings come from an optional YAML file and are overridden by command-line
flags. Defaults follow the usual HistFactory workspace naming.
"""

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError
from .techniques import get_technique

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class BreakdownConfig:
    """All settings of one breakdown run."""
    workspace_file: str = ""
    workspace_name: str = "combined"
    model_config_name: str = "ModelConfig"
    data_name: str = "obsData"
    poi_name: str = ""  # empty: first POI of the model config
    group_file: str = "config/breakdown.xml"
    technique: str = "add"
    group: str = "total"
    precision: float = 0.005
    corr_cutoff: float = 0.0
    output_dir: str = "output"
    folder: str = "breakdown"
    loglevel: str = "INFO"
    poi_range: float = 10.0
    poi_kick: float = 1.1
    max_iter: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def updated(self, **overrides) -> "BreakdownConfig":
        """Copy with the non-None overrides applied."""
        data = self.to_dict()
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in data:
                raise ConfigurationError(f"Unknown setting: {key}", key)
            data[key] = value
        return BreakdownConfig(**data)

    @property
    def output_path(self) -> Path:
        """Directory receiving the result tables of this run."""
        technique = get_technique(self.technique).name
        return Path(self.output_dir) / self.folder / f"breakdown_{technique}"

    def validate(self):
        """Raise ConfigurationError on the first invalid setting."""
        if not self.workspace_file:
            raise ConfigurationError("No workspace file given", "workspace_file")
        get_technique(self.technique)
        if not self.group:
            raise ConfigurationError("No group to evaluate given", "group")
        if not self.precision > 0:
            raise ConfigurationError(f"precision must be positive, got {self.precision}", "precision")
        if not 0.0 <= self.corr_cutoff <= 1.0:
            raise ConfigurationError(f"corr_cutoff must be in [0, 1], got {self.corr_cutoff}", "corr_cutoff")
        if not self.poi_range > 0:
            raise ConfigurationError(f"poi_range must be positive, got {self.poi_range}", "poi_range")
        if self.max_iter < 1:
            raise ConfigurationError(f"max_iter must be at least 1, got {self.max_iter}", "max_iter")
        if self.loglevel.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level: {self.loglevel}", "loglevel")


def _coerce(key: str, value: Any, expected: type) -> Any:
    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, expected) or isinstance(value, bool) and expected is not bool:
        raise ConfigurationError(
            f"Key '{key}' expected {expected.__name__}, got {type(value).__name__}", key
        )
    return value


def config_from_dict(data: Dict[str, Any], base: Optional[BreakdownConfig] = None) -> BreakdownConfig:
    """Build a config from a mapping, checking keys and types."""
    base = base or BreakdownConfig()
    types = {f.name: type(getattr(base, f.name)) for f in fields(BreakdownConfig)}
    values = {}
    for key, value in data.items():
        if key not in types:
            raise ConfigurationError(f"Unknown setting: {key}", key)
        values[key] = _coerce(key, value, types[key])
    return base.updated(**values)


def load_config(path) -> BreakdownConfig:
    """Load a YAML run configuration."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}", str(path))
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Config file {path} is malformed: {e}", str(path)) from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("Config file must parse to a mapping", str(path))

    logger.debug(f"Loaded config from {path}")
    return config_from_dict(data)
