"""
Device State Store - Last known state of every device across restarts.

The whole device table is rewritten atomically on each update. On load,
states that only make sense while the engine is running are brought back
to a resting state:

- CONNECTED, PREEMPTIVE_RECONNECT, DISCONNECTED -> TRUSTED_DISCONNECTED
  (an open session is closed with reason ``shutdown``)
- PAIRING -> DISCOVERED
- BLOCKED stays BLOCKED

``last_session_id`` is kept so session ids keep increasing after a restart.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .constants import Limits, Permissions
from .models import ConnectionState, Device, SessionEndReason
from .utils.error_handling import log_storage_error
from .utils.persistence import atomic_write_json, read_json_locked

logger = logging.getLogger(__name__)

STATE_VERSION = 1

RESUME_STATES = {
    ConnectionState.CONNECTED: ConnectionState.TRUSTED_DISCONNECTED,
    ConnectionState.PREEMPTIVE_RECONNECT: ConnectionState.TRUSTED_DISCONNECTED,
    ConnectionState.DISCONNECTED: ConnectionState.TRUSTED_DISCONNECTED,
    ConnectionState.PAIRING: ConnectionState.DISCOVERED,
}


class DeviceStateStore:
    """Atomic JSON persistence of the device table."""

    def __init__(self, state_file: Optional[Union[str, Path]],
                 session_history: int = Limits.SESSION_HISTORY,
                 clock: Callable[[], float] = time.time):
        self.state_file = Path(state_file) if state_file else None
        self.session_history = session_history
        self._clock = clock
        self._snapshot: Dict[str, dict] = {}
        self._lock = threading.Lock()
        self._write_failures = 0

    def load(self) -> Dict[str, Device]:
        """Read persisted devices and apply restart recovery."""
        if self.state_file is None:
            return {}
        data = read_json_locked(self.state_file)
        if data is None:
            return {}

        devices: Dict[str, Device] = {}
        for device_id, entry in data.get('devices', {}).items():
            try:
                device = Device.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                log_storage_error(e, "load_device_state", device_id=device_id)
                continue
            devices[device_id] = self._recover(device)

        with self._lock:
            self._snapshot = {d.device_id: d.to_dict() for d in devices.values()}
        logger.info(f"Restored {len(devices)} devices from {self.state_file}")
        return devices

    def _recover(self, device: Device) -> Device:
        resumed = RESUME_STATES.get(device.state)
        if resumed is not None:
            logger.info(f"Resuming {device.device_id} as {resumed.value} (was {device.state.value})")
            device.state = resumed

        if device.active_session is not None:
            ended_at = device.last_seen or self._clock()
            ended_at = max(ended_at, device.active_session.started_at)
            device.sessions.append(device.active_session.close(ended_at, SessionEndReason.SHUTDOWN))
            device.active_session = None

        # Sessions persisted before the counter was saved still bound it
        for session in device.sessions:
            device.last_session_id = max(device.last_session_id, session.session_id)

        del device.sessions[:-self.session_history]
        return device

    def update(self, device: Device) -> None:
        """
        Persist the current state of one device.

        Raises:
            OSError: the table could not be written
        """
        with self._lock:
            self._snapshot[device.device_id] = device.to_dict()
            self._write()

    def remove(self, device_id: str) -> None:
        with self._lock:
            if self._snapshot.pop(device_id, None) is not None:
                self._write()

    def _write(self) -> None:
        if self.state_file is None:
            return
        try:
            atomic_write_json(self.state_file,
                              {'version': STATE_VERSION, 'devices': self._snapshot},
                              mode=Permissions.SECURE_FILE)
        except OSError:
            self._write_failures += 1
            raise

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {'devices': len(self._snapshot), 'write_failures': self._write_failures}
