"""
Utility modules for the Connection Intelligence Engine.

Provides common utilities including:
- Error handling with categorized logging
- Atomic JSON persistence helpers
"""

from .error_handling import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ErrorAggregator,
    get_error_aggregator,
    handle_error,
    safe_execute,
    determine_severity,
    log_telemetry_error,
    log_prediction_error,
    log_trust_error,
    log_radio_error,
    log_storage_error,
)
from .persistence import atomic_write_json, read_json_locked

__all__ = [
    # Error handling
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'get_error_aggregator',
    'handle_error',
    'safe_execute',
    'determine_severity',
    'log_telemetry_error',
    'log_prediction_error',
    'log_trust_error',
    'log_radio_error',
    'log_storage_error',
    # Persistence
    'atomic_write_json',
    'read_json_locked',
]
