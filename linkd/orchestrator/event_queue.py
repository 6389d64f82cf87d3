"""
Device Event Queue - Bounded per-device queue with telemetry shedding.

When the queue is full, telemetry is shed first: the oldest queued
telemetry event is dropped to make room, or the incoming one is dropped if
nothing else can go. Critical events are always accepted, even past the
capacity.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Optional

from ..constants import Limits

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Kinds of events a device worker handles"""
    VECTOR = "vector"                       # Feature vector from telemetry
    PREDICTION = "prediction"
    LINK_LOST = "link_lost"
    CONNECT_REQUEST = "connect_request"
    RECONNECT_ATTEMPT = "reconnect_attempt"
    USER_DISCONNECT = "user_disconnect"
    REVOKED = "revoked"
    PAIRING_TIMEOUT = "pairing_timeout"
    PROFILE_CHANGED = "profile_changed"
    STABILITY_CHECK = "stability_check"


@dataclass
class DeviceEvent:
    """One unit of work for a device worker"""
    kind: EventKind
    payload: Any = None
    epoch: Optional[int] = None
    created_at: float = field(default_factory=time.monotonic)

    @property
    def critical(self) -> bool:
        return self.kind != EventKind.VECTOR


@dataclass
class QueueSnapshot:
    """Point-in-time queue measurement"""
    timestamp: float
    name: str
    depth: int
    capacity: int
    items_enqueued: int
    items_dequeued: int
    telemetry_dropped: int
    max_depth: int

    @property
    def utilization(self) -> float:
        if self.capacity <= 0:
            return 0.0
        return (self.depth / self.capacity) * 100

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp,
            'timestamp_iso': datetime.fromtimestamp(self.timestamp).isoformat(),
            'name': self.name,
            'depth': self.depth,
            'capacity': self.capacity,
            'utilization_percent': round(self.utilization, 1),
            'items_enqueued': self.items_enqueued,
            'items_dequeued': self.items_dequeued,
            'telemetry_dropped': self.telemetry_dropped,
            'max_depth': self.max_depth,
        }


class DeviceEventQueue:
    """Thread-safe bounded FIFO of DeviceEvents."""

    def __init__(self, name: str, capacity: int = Limits.QUEUE_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.name = name
        self.capacity = capacity
        self._items: Deque[DeviceEvent] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._enqueued = 0
        self._dequeued = 0
        self._dropped = 0
        self._max_depth = 0

    def put(self, event: DeviceEvent) -> bool:
        """
        Add an event.

        Returns:
            False if the event was dropped (or the queue is closed)
        """
        with self._cond:
            if self._closed:
                return False

            if len(self._items) >= self.capacity:
                if not self._drop_oldest_telemetry() and not event.critical:
                    self._dropped += 1
                    logger.debug(f"Queue {self.name} full, dropped incoming telemetry")
                    return False

            self._items.append(event)
            self._enqueued += 1
            self._max_depth = max(self._max_depth, len(self._items))
            self._cond.notify()
            return True

    def _drop_oldest_telemetry(self) -> bool:
        for i, queued in enumerate(self._items):
            if not queued.critical:
                del self._items[i]
                self._dropped += 1
                logger.debug(f"Queue {self.name} full, dropped oldest telemetry")
                return True
        return False

    def get(self, timeout: Optional[float] = None) -> Optional[DeviceEvent]:
        """Next event, or None on timeout or once closed and drained."""
        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait(timeout)
            if not self._items:
                return None
            self._dequeued += 1
            return self._items.popleft()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def snapshot(self) -> QueueSnapshot:
        with self._cond:
            return QueueSnapshot(
                timestamp=time.time(),
                name=self.name,
                depth=len(self._items),
                capacity=self.capacity,
                items_enqueued=self._enqueued,
                items_dequeued=self._dequeued,
                telemetry_dropped=self._dropped,
                max_depth=self._max_depth,
            )
