"""
Simulated Radio Driver - In-process radio for tests and the CLI demo.

Connections always succeed unless failures have been scripted for a device.
Readings and link losses are pushed to the attached listener synchronously
on the caller's thread.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Set, Tuple

from ..exceptions import RadioError
from ..models import ContextFlag
from .driver import RadioDriver, RadioReading

logger = logging.getLogger(__name__)


class SimulatedRadioDriver(RadioDriver):
    """Scriptable radio driver."""

    def __init__(self, connect_delay: float = 0.0):
        super().__init__()
        self.connect_delay = connect_delay
        self._connected: Set[str] = set()
        self._pending_failures: Dict[str, int] = {}
        self._unreachable: Set[str] = set()
        self._calls: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # RadioDriver
    # -------------------------------------------------------------------------

    def connect(self, device_id: str) -> None:
        if self.connect_delay:
            time.sleep(self.connect_delay)
        with self._lock:
            self._calls.append(('connect', device_id))
            if device_id in self._unreachable:
                raise RadioError(f"{device_id} out of range", reason="unreachable",
                                 device_id=device_id)
            remaining = self._pending_failures.get(device_id, 0)
            if remaining > 0:
                self._pending_failures[device_id] = remaining - 1
                raise RadioError(f"Scripted connect failure for {device_id}",
                                 reason="scripted", device_id=device_id)
            self._connected.add(device_id)
        logger.debug(f"Simulated link up: {device_id}")

    def disconnect(self, device_id: str) -> None:
        with self._lock:
            self._calls.append(('disconnect', device_id))
            self._connected.discard(device_id)

    def prepare_standby(self, device_id: str) -> None:
        with self._lock:
            self._calls.append(('prepare_standby', device_id))

    # -------------------------------------------------------------------------
    # Scripting
    # -------------------------------------------------------------------------

    def fail_next_connects(self, device_id: str, count: int) -> None:
        """Make the next ``count`` connect attempts for a device fail."""
        with self._lock:
            self._pending_failures[device_id] = count

    def set_reachable(self, device_id: str, reachable: bool) -> None:
        with self._lock:
            if reachable:
                self._unreachable.discard(device_id)
            else:
                self._unreachable.add(device_id)

    def discover(self, device_id: str, display_name: str = "") -> None:
        if self.listener:
            self.listener.on_device_discovered(device_id, display_name)

    def emit_sample(self, device_id: str, rssi: float, timestamp: Optional[float] = None,
                    battery: Optional[float] = None, flags=None) -> None:
        if self.listener:
            reading = RadioReading(
                rssi=rssi,
                timestamp=timestamp if timestamp is not None else time.time(),
                battery=battery,
                flags=flags if flags is not None else ContextFlag.NONE,
            )
            self.listener.on_signal_sample(device_id, reading)

    def drop_link(self, device_id: str) -> None:
        """Simulate the radio losing the link."""
        with self._lock:
            self._connected.discard(device_id)
        if self.listener:
            self.listener.on_link_lost(device_id)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def is_connected(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._connected

    def calls(self, operation: Optional[str] = None) -> List[Tuple[str, str]]:
        with self._lock:
            if operation is None:
                return list(self._calls)
            return [c for c in self._calls if c[0] == operation]


def decay_trace(start_dbm: float, end_dbm: float, duration: float, count: int,
                start_time: float, battery: Optional[float] = None) -> List[RadioReading]:
    """Evenly spaced readings decaying linearly from start_dbm to end_dbm."""
    if count < 2:
        raise ValueError("count must be at least 2")
    step_t = duration / (count - 1)
    step_s = (end_dbm - start_dbm) / (count - 1)
    return [
        RadioReading(
            rssi=start_dbm + i * step_s,
            timestamp=start_time + i * step_t,
            battery=battery,
        )
        for i in range(count)
    ]
