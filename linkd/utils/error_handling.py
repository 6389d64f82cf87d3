"""
Error Handling Utilities for the Connection Intelligence Engine

Provides consistent error handling across the engine with:
1. Detailed error logging with device context
2. Error categorization and severity levels
3. Stack trace preservation
4. Deduplicating error aggregation for status reporting

USAGE:
    from linkd.utils.error_handling import (
        handle_error,
        ErrorCategory,
        safe_execute,
    )

    # Context manager usage
    with safe_execute("load_model", ErrorCategory.PREDICTION) as result:
        result.value = load_model_artifact(path)

    # Direct error handling
    try:
        sampler.ingest(device_id, reading)
    except TelemetryError as e:
        handle_error(e, "ingest", ErrorCategory.TELEMETRY, device_id=device_id)
"""

import logging
import time
import threading
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..exceptions import TrustError, RadioError

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Which part of the engine an error came from."""
    # Out-of-order or garbled radio readings
    TELEMETRY = "telemetry"

    # Model unavailable, slow or fed invalid input
    PREDICTION = "prediction"

    # Pairing / authorization / revocation
    TRUST = "trust"

    # Radio connect / disconnect
    RADIO = "radio"

    # Persisted state
    STORAGE = "storage"

    # Configuration errors
    CONFIG = "configuration"

    # Unexpected faults inside a device worker
    INTERNAL = "internal"

    # Unknown/uncategorized
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """How badly an error affects the engine."""
    # Informational - operation can continue
    INFO = "info"

    # Warning - something unexpected but absorbed
    WARNING = "warning"

    # Error - operation failed but engine stable
    ERROR = "error"

    # Critical - trust guarantees at risk
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Everything known about one handled error."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    device_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    thread_name: str = field(default_factory=lambda: threading.current_thread().name)
    stack_trace: str = ""
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.stack_trace:
            self.stack_trace = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form, used by get_recent_errors()."""
        return {
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'category': self.category.value,
            'severity': self.severity.value,
            'operation': self.operation,
            'device_id': self.device_id,
            'timestamp': self.timestamp,
            'thread_name': self.thread_name,
            'stack_trace': self.stack_trace,
            'additional_context': self.additional_context,
        }

    def format_log_message(self) -> str:
        """Multi-line message for the engine log."""
        lines = [
            f"ERROR [{self.severity.value.upper()}] in {self.operation}",
            f"  Category: {self.category.value}",
            f"  Type: {type(self.error).__name__}",
            f"  Message: {self.error}",
            f"  Thread: {self.thread_name}",
        ]
        if self.device_id:
            lines.append(f"  Device: {self.device_id}")

        if self.additional_context:
            lines.append("  Context:")
            for key, value in self.additional_context.items():
                lines.append(f"    {key}: {value}")

        # Absorbed per-sample errors are expected; a trace only adds noise
        if self.severity in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL):
            trace_lines = [l for l in self.stack_trace.split('\n') if l.strip()]
            if trace_lines and trace_lines[0] != 'NoneType: None':
                lines.append("  Stack Trace:")
                lines.extend(f"    {line}" for line in trace_lines)

        return '\n'.join(lines)


class ErrorAggregator:
    """
    Aggregates and tracks errors for reporting and analysis.

    Thread-safe error collection with deduplication: the same
    (category, type, operation, device) seen again inside the window is only
    counted, not stored.
    """

    def __init__(self, max_errors: int = 1000, dedup_window_seconds: float = 60.0):
        self._errors: List[ErrorContext] = []
        self._lock = threading.Lock()
        self._max_errors = max_errors
        self._dedup_window = dedup_window_seconds
        self._error_counts: Dict[str, int] = {}
        self._last_error_times: Dict[str, float] = {}

    @staticmethod
    def _key(context: ErrorContext) -> str:
        return (f"{context.category.value}:{type(context.error).__name__}:"
                f"{context.operation}:{context.device_id or '-'}")

    def add_error(self, context: ErrorContext) -> bool:
        """
        Add an error to the aggregator.

        Returns True if error was added, False if deduplicated.
        """
        error_key = self._key(context)
        current_time = time.time()

        with self._lock:
            last_time = self._last_error_times.get(error_key)
            if last_time is not None and current_time - last_time < self._dedup_window:
                self._error_counts[error_key] = self._error_counts.get(error_key, 0) + 1
                return False

            self._errors.append(context)
            self._last_error_times[error_key] = current_time
            self._error_counts[error_key] = 1

            if len(self._errors) > self._max_errors:
                self._errors = self._errors[-self._max_errors:]

            return True

    def get_error_summary(self) -> Dict[str, Any]:
        """Get a summary of aggregated errors."""
        with self._lock:
            by_category: Dict[str, int] = {}
            by_severity: Dict[str, int] = {}

            for ctx in self._errors:
                cat = ctx.category.value
                sev = ctx.severity.value
                by_category[cat] = by_category.get(cat, 0) + 1
                by_severity[sev] = by_severity.get(sev, 0) + 1

            return {
                'total_errors': len(self._errors),
                'by_category': by_category,
                'by_severity': by_severity,
                'deduplicated_counts': dict(self._error_counts),
            }

    def get_recent_errors(self, count: int = 10) -> List[Dict[str, Any]]:
        """Get the most recent errors."""
        with self._lock:
            return [e.to_dict() for e in self._errors[-count:]]

    def clear(self):
        """Forget everything recorded so far."""
        with self._lock:
            self._errors.clear()
            self._error_counts.clear()
            self._last_error_times.clear()


# Global error aggregator
_global_aggregator = ErrorAggregator()


def get_error_aggregator() -> ErrorAggregator:
    """Process-wide aggregator shared by every component."""
    return _global_aggregator


def determine_severity(
    error: Exception,
    category: ErrorCategory,
) -> ErrorSeverity:
    """
    Determine the severity level for an error based on type and category.
    """
    # Dropped samples and fallbacks are routine
    if category in (ErrorCategory.TELEMETRY, ErrorCategory.PREDICTION):
        return ErrorSeverity.WARNING

    # Failing to persist trust state threatens the revocation guarantee
    if category == ErrorCategory.TRUST:
        if 'persist' in type(error).__name__.lower() or isinstance(error, OSError):
            return ErrorSeverity.CRITICAL
        return ErrorSeverity.WARNING

    if category == ErrorCategory.RADIO or isinstance(error, RadioError):
        return ErrorSeverity.WARNING

    if category == ErrorCategory.STORAGE:
        if isinstance(error, FileNotFoundError):
            return ErrorSeverity.WARNING
        return ErrorSeverity.ERROR

    if isinstance(error, TrustError):
        return ErrorSeverity.WARNING

    # Timeouts are warnings wherever they occur
    if 'timeout' in type(error).__name__.lower() or 'timeout' in str(error).lower():
        return ErrorSeverity.WARNING

    return ErrorSeverity.ERROR


def handle_error(
    error: Exception,
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    severity: Optional[ErrorSeverity] = None,
    device_id: Optional[str] = None,
    additional_context: Optional[Dict[str, Any]] = None,
    reraise: bool = False,
) -> ErrorContext:
    """
    Handle an error with logging and tracking.

    Args:
        error: The exception that occurred
        operation: Name of the operation that failed
        category: Category of the error
        severity: Severity level (auto-determined if not provided)
        device_id: Device the error belongs to, if any
        additional_context: Additional context information
        reraise: Whether to re-raise the exception after handling

    Returns:
        ErrorContext with full error details
    """
    if severity is None:
        severity = determine_severity(error, category)

    context = ErrorContext(
        error=error,
        category=category,
        severity=severity,
        operation=operation,
        device_id=device_id,
        additional_context=additional_context or {},
    )

    was_added = _global_aggregator.add_error(context)

    log_level = {
        ErrorSeverity.INFO: logging.INFO,
        ErrorSeverity.WARNING: logging.WARNING,
        ErrorSeverity.ERROR: logging.ERROR,
        ErrorSeverity.CRITICAL: logging.CRITICAL,
    }.get(severity, logging.ERROR)

    if was_added:
        logger.log(log_level, context.format_log_message())
    else:
        logger.debug(
            f"[DEDUPLICATED] {operation}: {type(error).__name__}: {error}"
        )

    if reraise:
        raise error

    return context


@contextmanager
def safe_execute(
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    default_return: Any = None,
    reraise: bool = False,
    device_id: Optional[str] = None,
    additional_context: Optional[Dict[str, Any]] = None,
):
    """
    Context manager for safe execution with error handling.

    Usage:
        with safe_execute("load_model", ErrorCategory.PREDICTION) as result:
            result.value = load_model_artifact(path)

    Args:
        operation: Name of the operation
        category: Error category
        default_return: Value left in result.value on error
        reraise: Whether to re-raise exceptions
        device_id: Device the operation belongs to, if any
        additional_context: Additional context information
    """
    class Result:
        def __init__(self):
            self.value = default_return
            self.error: Optional[ErrorContext] = None
            self.success = True

    result = Result()

    try:
        yield result
    except Exception as e:
        result.success = False
        result.value = default_return
        result.error = handle_error(
            e,
            operation,
            category=category,
            device_id=device_id,
            additional_context=additional_context,
            reraise=reraise,
        )


# Convenience functions for common error types
def log_telemetry_error(error: Exception, operation: str, device_id: str = None,
                        **context) -> ErrorContext:
    """Log a dropped or rejected telemetry reading."""
    return handle_error(error, operation, category=ErrorCategory.TELEMETRY,
                        device_id=device_id, additional_context=context)


def log_prediction_error(error: Exception, operation: str, device_id: str = None,
                         **context) -> ErrorContext:
    """Log a prediction failure that was absorbed by a fallback."""
    return handle_error(error, operation, category=ErrorCategory.PREDICTION,
                        device_id=device_id, additional_context=context)


def log_trust_error(error: Exception, operation: str, device_id: str = None,
                    **context) -> ErrorContext:
    """Log a trust failure surfaced to a caller."""
    return handle_error(error, operation, category=ErrorCategory.TRUST,
                        device_id=device_id, additional_context=context)


def log_radio_error(error: Exception, operation: str, device_id: str = None,
                    **context) -> ErrorContext:
    """Log a radio connect/disconnect failure."""
    return handle_error(error, operation, category=ErrorCategory.RADIO,
                        device_id=device_id, additional_context=context)


def log_storage_error(error: Exception, operation: str, **context) -> ErrorContext:
    """Log a persistence failure."""
    return handle_error(error, operation, category=ErrorCategory.STORAGE,
                        additional_context=context)


__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'get_error_aggregator',
    'handle_error',
    'safe_execute',
    'with_error_handling',
    'determine_severity',
    'log_telemetry_error',
    'log_prediction_error',
    'log_trust_error',
    'log_radio_error',
    'log_storage_error',
]
