"""
linkd - Connection Intelligence Engine - Core Components
"""

__version__ = "0.1.0"

from .logging_config import get_logger, setup_logging
from .constants import (
    Timeouts,
    WindowDefaults,
    SignalLimits,
    Thresholds,
    Retries,
    Limits,
    Permissions,
    Paths,
    DEFAULT_CAPABILITIES,
)
from .exceptions import (
    EngineError,
    TelemetryError,
    PredictionError,
    TrustError,
    RadioError,
    ConfigError,
)
from .models import (
    Capability,
    ConnectionSession,
    ConnectionState,
    ContextFlag,
    Device,
    FeatureVector,
    PredictionResult,
    Profile,
    ProfileKind,
    TelemetrySample,
    TrustRecord,
)
from .config import EngineConfig, load_config
from .event_logger import EventLogger, EventType, EngineEvent
from .trust_store import TrustStore
from .state_store import DeviceStateStore
from .profile_classifier import ProfileClassifier
from .engine import ConnectionEngine

__all__ = [
    '__version__',
    'get_logger',
    'setup_logging',
    'Timeouts',
    'WindowDefaults',
    'SignalLimits',
    'Thresholds',
    'Retries',
    'Limits',
    'Permissions',
    'Paths',
    'DEFAULT_CAPABILITIES',
    'EngineError',
    'TelemetryError',
    'PredictionError',
    'TrustError',
    'RadioError',
    'ConfigError',
    'Capability',
    'ConnectionSession',
    'ConnectionState',
    'ContextFlag',
    'Device',
    'FeatureVector',
    'PredictionResult',
    'Profile',
    'ProfileKind',
    'TelemetrySample',
    'TrustRecord',
    'EngineConfig',
    'load_config',
    'EventLogger',
    'EventType',
    'EngineEvent',
    'TrustStore',
    'DeviceStateStore',
    'ProfileClassifier',
    'ConnectionEngine',
]
