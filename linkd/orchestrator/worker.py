"""
Device Worker - One thread per device draining its event queue, plus the
per-device timers that feed it.
"""

import logging
import threading
from typing import Callable, Dict, Optional

from ..constants import Timeouts
from ..utils.error_handling import ErrorCategory, handle_error
from .event_queue import DeviceEvent, DeviceEventQueue

logger = logging.getLogger(__name__)


class DeviceWorker:
    """Consumes one device's events strictly in order."""

    def __init__(self, device_id: str, queue: DeviceEventQueue,
                 handler: Callable[[DeviceEvent], None],
                 poll_interval: float = Timeouts.WORKER_POLL):
        self.device_id = device_id
        self.queue = queue
        self._handler = handler
        self._poll_interval = poll_interval
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(
            target=self._run, name=f"linkd-device-{self.device_id}", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = Timeouts.THREAD_JOIN_DEFAULT):
        self._running = False
        self.queue.close()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Worker for {self.device_id} did not stop within {timeout}s")

    @property
    def is_running(self) -> bool:
        return self._running and self._thread is not None and self._thread.is_alive()

    def _run(self):
        logger.debug(f"Worker for {self.device_id} started")
        while self._running:
            event = self.queue.get(timeout=self._poll_interval)
            if event is None:
                if self.queue.closed:
                    break
                continue
            try:
                self._handler(event)
            except Exception as e:
                handle_error(e, f"worker_{event.kind.value}", ErrorCategory.INTERNAL,
                             device_id=self.device_id)
        logger.debug(f"Worker for {self.device_id} stopped")


class DeviceTimers:
    """Named one-shot timers for a device; scheduling a name replaces it."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def schedule(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.name = f"linkd-timer-{self.device_id}-{name}"
        with self._lock:
            previous = self._timers.pop(name, None)
            self._timers[name] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def cancel(self, name: str) -> bool:
        with self._lock:
            timer = self._timers.pop(name, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def pending(self):
        with self._lock:
            return sorted(name for name, t in self._timers.items() if t.is_alive())
