"""
Centralized Constants Module for the Connection Intelligence Engine.

Collects the thresholds, timing defaults and limits used by the telemetry
pipeline, the prediction service, the trust store and the orchestrator so
they can be audited in one place.

Usage:
    from linkd.constants import Timeouts, Thresholds, Retries

    service = PredictionService(timeout=Timeouts.PREDICTION)
"""

import os
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

ENV_PREFIX = "LINKD_"


# =============================================================================
# ENVIRONMENT VARIABLE OVERRIDE UTILITIES
# =============================================================================

T = TypeVar('T')


def env_override(
    env_var: str,
    default: T,
    converter: Callable[[str], T] = str,
    validator: Optional[Callable[[T], bool]] = None,
    min_value: Optional[T] = None,
    max_value: Optional[T] = None,
) -> T:
    """Get a configuration value with environment variable override.

    Out-of-range or unparsable values are logged and the default is kept.

    Args:
        env_var: Environment variable name (will be prefixed with LINKD_)
        default: Default value if env var not set
        converter: Function to convert string to target type
        validator: Optional validation function
        min_value: Optional minimum allowed value
        max_value: Optional maximum allowed value

    Returns:
        Configured value (from env var if valid, otherwise default)
    """
    full_env_var = f"{ENV_PREFIX}{env_var.upper()}"
    env_value = os.environ.get(full_env_var)

    if env_value is None:
        return default

    try:
        converted = converter(env_value)

        if min_value is not None and converted < min_value:
            logger.warning(
                f"{full_env_var}={env_value} below minimum {min_value}, using default"
            )
            return default
        if max_value is not None and converted > max_value:
            logger.warning(
                f"{full_env_var}={env_value} above maximum {max_value}, using default"
            )
            return default

        if validator is not None and not validator(converted):
            logger.warning(f"{full_env_var}={env_value} failed validation, using default")
            return default

        logger.info(f"Using {full_env_var}={converted} (override)")
        return converted

    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid value for {full_env_var}: {e}, using default")
        return default


# =============================================================================
# TIMEOUT CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Timeouts:
    """
    Centralized timeout values in seconds.

    Prediction calls sit on the per-device hot path and are bounded tightly.
    Radio and pairing timeouts are human-scale.
    """
    PREDICTION: float = 0.25            # Max wait for a model answer
    PAIRING: float = 60.0               # Token exchange must finish within
    WORKER_POLL: float = 0.5            # Device worker queue poll
    THREAD_JOIN_DEFAULT: float = 5.0    # Standard thread shutdown


# =============================================================================
# WINDOW / TELEMETRY CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class WindowDefaults:
    """Feature window sizing and pacing."""
    CAPACITY: int = 32                  # Samples kept per device
    MIN_SAMPLES: int = 5                # Samples needed before emitting
    SPAN_SECONDS: float = 60.0          # Oldest sample age kept in window
    MIN_REEVALUATION_INTERVAL: float = 2.0
    STALENESS_THRESHOLD: float = 30.0   # Gap that clears the window


@dataclass(frozen=True)
class SignalLimits:
    """Physical bounds used when normalizing radio readings."""
    RSSI_MIN: float = -127.0            # dBm
    RSSI_MAX: float = 20.0              # dBm
    BATTERY_MIN: float = 0.0            # percent
    BATTERY_MAX: float = 100.0          # percent
    MILLISECOND_EPOCH_CUTOFF: float = 1e11


# =============================================================================
# DECISION THRESHOLDS
# =============================================================================

@dataclass(frozen=True)
class Thresholds:
    """Prediction decision thresholds."""
    HIGH_RISK_PROBABILITY: float = 0.7
    MIN_CONFIDENCE: float = 0.5
    EAGER_MARGIN: float = 0.1           # Threshold reduction for eager profiles
    PREDICTION_HORIZON: float = 15.0    # Seconds a result stays usable
    PREEMPTIVE_COOLDOWN: float = 30.0
    HEURISTIC_SIGNAL_DBM: float = -85.0
    HEURISTIC_CONFIDENCE: float = 0.2   # Confidence ceiling for fallbacks


# =============================================================================
# RETRY CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Retries:
    """
    Reconnect retry parameters.

    Retry limits keep a flapping link from hammering the radio forever.
    """
    MAX_RECONNECT: int = 3
    DELAY_BASE: float = 0.5             # First backoff delay
    BACKOFF_MULTIPLIER: float = 2.0     # Double each retry
    MAX_DELAY: float = 30.0             # Backoff cap
    STABLE_CONNECTION_PERIOD: float = 60.0  # Uptime that clears failures


# =============================================================================
# LIMITS
# =============================================================================

@dataclass(frozen=True)
class Limits:
    """Size limits and attempt counts."""
    QUEUE_CAPACITY: int = 256           # Events buffered per device
    MAX_PAIRING_ATTEMPTS: int = 3       # Mismatches before exchange is voided
    SESSION_HISTORY: int = 50           # Closed sessions kept per device
    PREDICTION_WORKERS: int = 4
    MAX_DEVICE_ID_LENGTH: int = 128


# =============================================================================
# FILE PERMISSION CONSTANTS
# =============================================================================

class Permissions(IntEnum):
    """File permission modes for persisted engine state."""
    SECURE_FILE = 0o600                 # rw------- (trust records, keys)
    SECURE_DIR = 0o700                  # rwx------ (state directory)
    STANDARD_FILE = 0o644


@dataclass(frozen=True)
class Paths:
    """Default on-disk locations (relative to the working directory)."""
    STATE_DIR: str = './state'
    LOG_DIR: str = './logs'
    TRUST_FILE: str = 'trust.json'
    TRUST_KEY_FILE: str = 'trust.key'
    DEVICE_STATE_FILE: str = 'devices.json'
    EVENT_LOG_FILE: str = 'engine_events.log'


# =============================================================================
# CONVENIENCE EXPORTS
# =============================================================================

DEFAULT_CAPABILITIES = ('file_transfer', 'audio_routing')


__all__ = [
    'env_override',
    'Timeouts',
    'WindowDefaults',
    'SignalLimits',
    'Thresholds',
    'Retries',
    'Limits',
    'Permissions',
    'Paths',
    'DEFAULT_CAPABILITIES',
]
