"""
Engine Configuration - Loading, validation and environment overrides.

Configuration files are YAML (``.yaml``/``.yml``) or JSON (``.json``)
mappings whose keys mirror the fields of :class:`EngineConfig`; profile
rules live under a nested ``profiles`` mapping:

    high_risk_threshold: 0.7
    max_reconnect_retries: 3
    profiles:
      home_networks: [Home-WiFi]
      office_networks: [Office-Net]
      office_hours: [9, 18]
      travel_distance: 500

Numeric options can be overridden with ``LINKD_<OPTION>`` environment
variables (e.g. ``LINKD_HIGH_RISK_THRESHOLD=0.8``).
"""

import json
import logging
import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..constants import (
    DEFAULT_CAPABILITIES,
    Limits,
    Paths,
    Retries,
    Thresholds,
    Timeouts,
    WindowDefaults,
    env_override,
)
from ..exceptions import ConfigError

logger = logging.getLogger(__name__)


class ConfigFormat(Enum):
    """Supported configuration file formats."""
    JSON = "json"
    YAML = "yaml"


MODEL_KINDS = ('heuristic', 'logistic', 'trend')


@dataclass
class ProfileRules:
    """Rules consumed by the profile classifier."""
    home_networks: List[str] = field(default_factory=list)
    office_networks: List[str] = field(default_factory=list)
    office_hours: Tuple[int, int] = (9, 18)     # [start, end), may wrap midnight
    travel_distance: float = 500.0              # metres

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProfileRules':
        hours = data.get('office_hours', (9, 18))
        return cls(
            home_networks=[str(n).strip() for n in data.get('home_networks', [])],
            office_networks=[str(n).strip() for n in data.get('office_networks', [])],
            office_hours=(int(hours[0]), int(hours[1])),
            travel_distance=float(data.get('travel_distance', 500.0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'home_networks': list(self.home_networks),
            'office_networks': list(self.office_networks),
            'office_hours': list(self.office_hours),
            'travel_distance': self.travel_distance,
        }


@dataclass
class EngineConfig:
    """All tunables of the engine."""
    # Feature window
    window_capacity: int = WindowDefaults.CAPACITY
    window_min_samples: int = WindowDefaults.MIN_SAMPLES
    window_span: float = WindowDefaults.SPAN_SECONDS
    min_reevaluation_interval: float = WindowDefaults.MIN_REEVALUATION_INTERVAL
    staleness_threshold: float = WindowDefaults.STALENESS_THRESHOLD

    # Prediction
    prediction_horizon: float = Thresholds.PREDICTION_HORIZON
    prediction_timeout: float = Timeouts.PREDICTION
    prediction_workers: int = Limits.PREDICTION_WORKERS
    model_kind: str = 'logistic'
    model_artifact: Optional[str] = None
    model_verify_key: Optional[str] = None      # hex Ed25519 public key
    heuristic_signal_threshold: float = Thresholds.HEURISTIC_SIGNAL_DBM

    # Decisions
    high_risk_threshold: float = Thresholds.HIGH_RISK_PROBABILITY
    min_confidence: float = Thresholds.MIN_CONFIDENCE
    eager_threshold_margin: float = Thresholds.EAGER_MARGIN
    preemptive_cooldown: float = Thresholds.PREEMPTIVE_COOLDOWN

    # Reconnects
    max_reconnect_retries: int = Retries.MAX_RECONNECT
    backoff_base: float = Retries.DELAY_BASE
    backoff_cap: float = Retries.MAX_DELAY
    stable_connection_period: float = Retries.STABLE_CONNECTION_PERIOD
    auto_connect: bool = True                   # Connect right after pairing / on start

    # Pairing / trust
    pairing_timeout: float = Timeouts.PAIRING
    max_pairing_attempts: int = Limits.MAX_PAIRING_ATTEMPTS
    default_capabilities: List[str] = field(default_factory=lambda: list(DEFAULT_CAPABILITIES))

    # Workers
    queue_capacity: int = Limits.QUEUE_CAPACITY
    session_history: int = Limits.SESSION_HISTORY

    # Paths
    state_dir: str = Paths.STATE_DIR
    log_dir: str = Paths.LOG_DIR

    profiles: ProfileRules = field(default_factory=ProfileRules)

    # -------------------------------------------------------------------------
    # Derived paths
    # -------------------------------------------------------------------------

    @property
    def trust_file(self) -> Path:
        return Path(self.state_dir) / Paths.TRUST_FILE

    @property
    def trust_key_file(self) -> Path:
        return Path(self.state_dir) / Paths.TRUST_KEY_FILE

    @property
    def device_state_file(self) -> Path:
        return Path(self.state_dir) / Paths.DEVICE_STATE_FILE

    @property
    def event_log_file(self) -> Path:
        return Path(self.log_dir) / Paths.EVENT_LOG_FILE

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EngineConfig':
        """Build a config from a mapping; unknown keys are logged and ignored."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning(f"Unknown configuration key ignored: {key}")
                continue
            if key == 'profiles':
                kwargs[key] = ProfileRules.from_dict(value or {})
            else:
                kwargs[key] = value
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['profiles'] = self.profiles.to_dict()
        return data

    # -------------------------------------------------------------------------
    # Environment overrides
    # -------------------------------------------------------------------------

    def apply_env_overrides(self) -> 'EngineConfig':
        """Override numeric options from LINKD_<OPTION> environment variables."""
        for f in fields(self):
            current = getattr(self, f.name)
            if isinstance(current, bool) or not isinstance(current, (int, float)):
                continue
            converter = int if isinstance(current, int) else float
            setattr(self, f.name, env_override(
                f.name, current, converter=converter,
                validator=lambda v: math.isfinite(v), min_value=0,
            ))
        return self

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> 'EngineConfig':
        """
        Check the configuration for inconsistent values.

        Raises:
            ConfigError: describing every problem found
        """
        problems = []

        def positive(name: str) -> None:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                problems.append(f"{name} must be positive (got {value!r})")

        for name in ('window_capacity', 'window_min_samples', 'window_span',
                     'staleness_threshold', 'prediction_horizon', 'prediction_timeout',
                     'prediction_workers', 'backoff_base', 'backoff_cap',
                     'stable_connection_period', 'pairing_timeout',
                     'max_pairing_attempts', 'queue_capacity', 'session_history'):
            positive(name)

        for name in ('min_reevaluation_interval', 'preemptive_cooldown', 'max_reconnect_retries'):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value < 0:
                problems.append(f"{name} must be non-negative (got {value!r})")

        for name in ('high_risk_threshold', 'min_confidence', 'eager_threshold_margin'):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                problems.append(f"{name} must be within [0, 1] (got {value!r})")

        if isinstance(self.window_min_samples, int) and isinstance(self.window_capacity, int):
            if self.window_min_samples > self.window_capacity:
                problems.append("window_min_samples cannot exceed window_capacity")
        if isinstance(self.window_min_samples, int) and self.window_min_samples < 2:
            problems.append("window_min_samples must be at least 2 to fit a trend")
        if self.backoff_base > self.backoff_cap:
            problems.append("backoff_base cannot exceed backoff_cap")
        if self.model_kind not in MODEL_KINDS:
            problems.append(f"model_kind must be one of {', '.join(MODEL_KINDS)} (got {self.model_kind!r})")
        if not isinstance(self.auto_connect, bool):
            problems.append(f"auto_connect must be a boolean (got {self.auto_connect!r})")
        if not self.default_capabilities:
            problems.append("default_capabilities cannot be empty")

        start, end = self.profiles.office_hours
        if not (0 <= start <= 23 and 0 <= end <= 23):
            problems.append(f"office_hours must be hours 0-23 (got {self.profiles.office_hours})")
        if self.profiles.travel_distance <= 0:
            problems.append("travel_distance must be positive")
        overlap = set(self.profiles.home_networks) & set(self.profiles.office_networks)
        if overlap:
            problems.append(f"networks listed as both home and office: {sorted(overlap)}")

        if problems:
            raise ConfigError("; ".join(problems), reason="invalid_config")
        return self


def _detect_format(path: Path) -> ConfigFormat:
    ext = path.suffix.lower()
    if ext in {'.yaml', '.yml'}:
        return ConfigFormat.YAML
    if ext == '.json':
        return ConfigFormat.JSON
    raise ConfigError(f"Unsupported configuration format: {path.name}")


def load_config(path: Optional[Union[str, Path]] = None, apply_env: bool = True) -> EngineConfig:
    """
    Load, override and validate the engine configuration.

    Args:
        path: YAML or JSON file; defaults are used when None
        apply_env: Apply LINKD_* environment overrides

    Raises:
        ConfigError: if the file is missing, unparsable or invalid
    """
    data: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        fmt = _detect_format(path)
        content = path.read_text()
        try:
            if fmt == ConfigFormat.YAML:
                data = yaml.safe_load(content) or {}
            else:
                data = json.loads(content)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")
        logger.info(f"Loaded configuration from {path}")

    config = EngineConfig.from_dict(data)
    if apply_env:
        config.apply_env_overrides()
    return config.validate()


def save_config(config: EngineConfig, path: Union[str, Path]) -> None:
    """Write the configuration as YAML or JSON depending on the extension."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.to_dict()
    if _detect_format(path) == ConfigFormat.YAML:
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    else:
        content = json.dumps(data, indent=2)
    path.write_text(content)
    logger.info(f"Saved configuration to {path}")
