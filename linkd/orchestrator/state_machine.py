"""
Connection State Machine - Allowed transitions and per-device runtime state.
"""

import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional

from ..constants import Retries
from ..models import ConnectionState, Device, FeatureVector

S = ConnectionState


class Trigger(Enum):
    """What drove a transition"""
    BEGIN_PAIRING = "begin_pairing"
    PAIRED = "paired"
    PAIRING_TIMEOUT = "pairing_timeout"
    CONNECT_REQUEST = "connect_request"
    RECONNECT = "reconnect"
    RECONNECT_FAILED = "reconnect_failed"
    PREDICTION = "prediction"
    LINK_LOST = "link_lost"
    RETRIES_EXHAUSTED = "retries_exhausted"
    REVOKED = "revoked"
    USER_DISCONNECT = "user_disconnect"
    FAULT = "fault"


ALLOWED_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    S.DISCOVERED: frozenset({S.PAIRING, S.BLOCKED}),
    S.PAIRING: frozenset({S.DISCOVERED, S.TRUSTED_DISCONNECTED, S.BLOCKED}),
    S.TRUSTED_DISCONNECTED: frozenset({S.CONNECTED, S.DISCONNECTED, S.BLOCKED}),
    S.CONNECTED: frozenset({
        S.PREEMPTIVE_RECONNECT, S.DISCONNECTED, S.TRUSTED_DISCONNECTED, S.BLOCKED,
    }),
    S.PREEMPTIVE_RECONNECT: frozenset({
        S.CONNECTED, S.DISCONNECTED, S.TRUSTED_DISCONNECTED, S.BLOCKED,
    }),
    S.DISCONNECTED: frozenset({S.CONNECTED, S.TRUSTED_DISCONNECTED, S.BLOCKED}),
    S.BLOCKED: frozenset({S.PAIRING}),
}

RECONNECTABLE_STATES = frozenset({
    S.TRUSTED_DISCONNECTED, S.DISCONNECTED, S.PREEMPTIVE_RECONNECT,
})


def is_allowed(old: ConnectionState, new: ConnectionState) -> bool:
    return new in ALLOWED_TRANSITIONS.get(old, frozenset())


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect attempt ``attempt`` (1-based)."""
    return min(cap, base * Retries.BACKOFF_MULTIPLIER ** (max(1, attempt) - 1))


@dataclass
class DeviceContext:
    """
    Runtime state of one device.

    ``lock`` serializes event handling for the device; ``epoch`` increases on
    every transition so timers and prediction results created in an earlier
    state can be recognized and discarded.
    """
    device: Device
    epoch: int = 0
    in_flight: Optional[Future] = None
    pending_vector: Optional[FeatureVector] = None
    connected_since: Optional[float] = None
    lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def device_id(self) -> str:
        return self.device.device_id

    @property
    def state(self) -> ConnectionState:
        return self.device.state

    def cancel_prediction(self) -> None:
        if self.in_flight is not None:
            self.in_flight.cancel()
        self.in_flight = None
        self.pending_vector = None
