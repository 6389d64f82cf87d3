"""
Connection orchestration: per-device state machine, queues, workers and
the capability gate.
"""

from .state_machine import (
    ALLOWED_TRANSITIONS,
    DeviceContext,
    Trigger,
    backoff_delay,
    is_allowed,
)
from .event_queue import DeviceEvent, DeviceEventQueue, EventKind, QueueSnapshot
from .worker import DeviceTimers, DeviceWorker
from .orchestrator import ConnectionOrchestrator
from .capability_gate import CapabilityGate

__all__ = [
    'ALLOWED_TRANSITIONS',
    'DeviceContext',
    'Trigger',
    'backoff_delay',
    'is_allowed',
    'DeviceEvent',
    'DeviceEventQueue',
    'EventKind',
    'QueueSnapshot',
    'DeviceTimers',
    'DeviceWorker',
    'ConnectionOrchestrator',
    'CapabilityGate',
]
