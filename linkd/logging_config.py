"""
Logging Configuration for the Connection Intelligence Engine.

One root configuration shared by every engine component. Levels can be
lowered per feature area, so telemetry tracing stays off while trust
events are still logged.

Usage:
    from linkd.logging_config import setup_logging, get_logger

    # Setup at engine startup
    setup_logging(verbose=True)

    # Logger tagged with its feature area
    logger = get_logger('linkd.orchestrator')
    logger.notice("Profile changed", extra={"extra_data": {"profile": "home"}})
"""

import sys
import json
import logging
import threading
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Optional, Dict, Any, Set
from dataclasses import dataclass, field


# =============================================================================
# LOGGING LEVELS AND FEATURES
# =============================================================================

class LogLevel(Enum):
    """Extended logging levels for the engine."""
    TRACE = 5       # Per-sample tracing
    DEBUG = 10
    VERBOSE = 15    # Verbose operational info
    INFO = 20
    NOTICE = 25     # Notable events (profile changes, preemptive reconnects)
    WARNING = 30
    ERROR = 40
    CRITICAL = 50
    SECURITY = 55   # Trust decisions (always logged)


class FeatureArea(Enum):
    """Feature areas for targeted logging."""
    CORE = auto()           # Engine wiring and lifecycle
    TELEMETRY = auto()      # Sampler and feature window
    PREDICTION = auto()     # Prediction service and models
    PROFILE = auto()        # Profile classifier
    TRUST = auto()          # Trust store and capability gate
    ORCHESTRATOR = auto()   # State machine and workers
    RADIO = auto()          # Radio drivers
    STORAGE = auto()        # Persistence
    EVENT_LOGGER = auto()   # Audit event log
    CONFIG = auto()


for _level in (LogLevel.TRACE, LogLevel.VERBOSE, LogLevel.NOTICE, LogLevel.SECURITY):
    logging.addLevelName(_level.value, _level.name)


# =============================================================================
# THREAD-SAFE CONFIGURATION STATE
# =============================================================================

@dataclass
class LoggingState:
    """Thread-safe logging configuration state."""
    verbose: bool = False
    trace: bool = False
    log_file: Optional[str] = None
    console_enabled: bool = True
    json_format: bool = False
    feature_levels: Dict[FeatureArea, int] = field(default_factory=dict)
    enabled_features: Set[FeatureArea] = field(default_factory=lambda: set(FeatureArea))
    initialized: bool = False
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def __post_init__(self):
        if not self.feature_levels:
            for feature in FeatureArea:
                self.feature_levels[feature] = logging.INFO


_state = LoggingState()


# =============================================================================
# CUSTOM FORMATTER
# =============================================================================

class EngineFormatter(logging.Formatter):
    """Formatter with color support and optional JSON-lines output."""

    COLORS = {
        'TRACE': '\033[90m',      # Gray
        'DEBUG': '\033[36m',      # Cyan
        'VERBOSE': '\033[94m',    # Light blue
        'INFO': '\033[32m',       # Green
        'NOTICE': '\033[33m',     # Yellow
        'WARNING': '\033[33;1m',  # Bold yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[31;1m', # Bold red
        'SECURITY': '\033[35;1m', # Bold magenta
        'RESET': '\033[0m',
    }

    def __init__(self, use_colors: bool = True, json_format: bool = False):
        self.use_colors = use_colors and sys.stdout.isatty()
        self.json_format = json_format
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            return self._format_json(record)
        return self._format_text(record)

    def _format_text(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        level_name = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level_name, '')
            reset = self.COLORS['RESET']
            level_str = f"{color}{level_name:8}{reset}"
        else:
            level_str = f"{level_name:8}"

        feature = self._extract_feature(record.name)
        feature_str = f"[{feature}]" if feature else ""

        msg = record.getMessage()

        extra_str = ""
        if hasattr(record, 'extra_data') and record.extra_data:
            extra_items = [f"{k}={v}" for k, v in record.extra_data.items()]
            extra_str = f" | {', '.join(extra_items)}"

        text = f"{timestamp} {level_str} {feature_str:20} {msg}{extra_str}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text

    def _format_json(self, record: logging.LogRecord) -> str:
        data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'feature': self._extract_feature(record.name),
        }

        if hasattr(record, 'extra_data') and record.extra_data:
            data['extra'] = record.extra_data

        if record.exc_info:
            data['exception'] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)

    def _extract_feature(self, logger_name: str) -> str:
        """Feature area tag shown in text output."""
        parts = logger_name.split('.')
        if len(parts) >= 2:
            # linkd.prediction.service -> prediction
            return parts[1] if parts[0] == 'linkd' else parts[0]
        return parts[0] if parts else 'core'


# =============================================================================
# CUSTOM LOGGER CLASS
# =============================================================================

class EngineLogger(logging.Logger):
    """Extended logger with additional levels and feature tracking."""

    FEATURE_MAP = {
        'telemetry': FeatureArea.TELEMETRY,
        'sampler': FeatureArea.TELEMETRY,
        'feature_window': FeatureArea.TELEMETRY,
        'prediction': FeatureArea.PREDICTION,
        'profile': FeatureArea.PROFILE,
        'trust': FeatureArea.TRUST,
        'capability': FeatureArea.TRUST,
        'orchestrator': FeatureArea.ORCHESTRATOR,
        'radio': FeatureArea.RADIO,
        'state_store': FeatureArea.STORAGE,
        'persistence': FeatureArea.STORAGE,
        'event_logger': FeatureArea.EVENT_LOGGER,
        'config': FeatureArea.CONFIG,
    }

    def __init__(self, name: str, level: int = logging.NOTSET):
        super().__init__(name, level)
        self.feature: FeatureArea = self._detect_feature(name)

    def _detect_feature(self, name: str) -> FeatureArea:
        name_lower = name.lower()
        for key, feature in self.FEATURE_MAP.items():
            if key in name_lower:
                return feature
        return FeatureArea.CORE

    def trace(self, msg: str, *args, **kwargs):
        """Log at TRACE level (per-sample detail)."""
        if self.isEnabledFor(LogLevel.TRACE.value):
            self._log(LogLevel.TRACE.value, msg, args, **kwargs)

    def notice(self, msg: str, *args, **kwargs):
        """Log at NOTICE level."""
        if self.isEnabledFor(LogLevel.NOTICE.value):
            self._log(LogLevel.NOTICE.value, msg, args, **kwargs)

    def security(self, msg: str, *args, **kwargs):
        """Log trust decisions (always logged)."""
        self._log(LogLevel.SECURITY.value, msg, args, **kwargs)


logging.setLoggerClass(EngineLogger)


# =============================================================================
# SETUP AND CONFIGURATION
# =============================================================================

def setup_logging(
    verbose: bool = False,
    trace: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    features: Optional[Set[FeatureArea]] = None,
) -> None:
    """
    Initialize the logging system.

    Args:
        verbose: Enable verbose logging (VERBOSE level)
        trace: Enable trace logging (TRACE level, implies verbose)
        log_file: Optional file path for log output
        console: Enable console output
        json_format: Use JSON format for logs
        features: Set of features to enable (all by default)
    """
    with _state._lock:
        _state.verbose = verbose or trace
        _state.trace = trace
        _state.log_file = log_file
        _state.console_enabled = console
        _state.json_format = json_format
        _state.enabled_features = set(features) if features is not None else set(FeatureArea)

        if trace:
            base_level = LogLevel.TRACE.value
        elif verbose:
            base_level = LogLevel.VERBOSE.value
        else:
            base_level = logging.INFO

        root = logging.getLogger()
        root.setLevel(base_level)

        for handler in root.handlers[:]:
            root.removeHandler(handler)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(base_level)
            console_handler.setFormatter(EngineFormatter(
                use_colors=True,
                json_format=json_format
            ))
            root.addHandler(console_handler)

        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(base_level)
            file_handler.setFormatter(EngineFormatter(
                use_colors=False,
                json_format=json_format
            ))
            root.addHandler(file_handler)

        # Disabled features only log warnings and above
        for feature in FeatureArea:
            feature_level = base_level if feature in _state.enabled_features else logging.WARNING
            _state.feature_levels[feature] = feature_level
        _apply_feature_levels()

        _state.initialized = True


def _apply_feature_levels() -> None:
    for name, logger in logging.Logger.manager.loggerDict.items():
        if isinstance(logger, EngineLogger) and name.startswith('linkd'):
            if logger.feature not in _state.enabled_features:
                logger.setLevel(logging.WARNING)
            else:
                logger.setLevel(logging.NOTSET)


def get_logger(name: str) -> EngineLogger:
    """
    Get a feature-aware logger.

    Args:
        name: Logger name (e.g., 'linkd.trust_store')
    """
    logger = logging.getLogger(name)
    if not isinstance(logger, EngineLogger):
        logging.setLoggerClass(EngineLogger)
        logger = logging.getLogger(name)
    return logger


def get_logging_state() -> Dict[str, Any]:
    """Snapshot of the active logging setup, reported in engine status."""
    with _state._lock:
        return {
            'verbose': _state.verbose,
            'trace': _state.trace,
            'log_file': _state.log_file,
            'console_enabled': _state.console_enabled,
            'json_format': _state.json_format,
            'enabled_features': sorted(f.name for f in _state.enabled_features),
            'initialized': _state.initialized,
        }


__all__ = [
    'LogLevel',
    'FeatureArea',
    'setup_logging',
    'get_logger',
    'get_logging_state',
    'EngineLogger',
    'EngineFormatter',
]
