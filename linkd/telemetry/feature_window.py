"""
Feature Window - Per-device sliding window over telemetry samples.

Each device gets a bounded ring buffer. A window is evaluated into a
FeatureVector once it holds enough samples and enough sample time has
passed since the previous evaluation for that device. A long silence
empties the buffer so features never mix readings from before and after
a gap.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Optional

import numpy as np

from ..constants import WindowDefaults
from ..models import FeatureVector, TelemetrySample

logger = logging.getLogger(__name__)


class _DeviceWindow:
    """Buffer and pacing state for one device."""

    def __init__(self, capacity: int):
        self.samples: Deque[TelemetrySample] = deque(maxlen=capacity)
        self.last_emitted: Optional[float] = None
        self.lock = threading.Lock()

    def clear(self) -> None:
        self.samples.clear()
        self.last_emitted = None


class FeatureWindow:
    """
    Sliding windows keyed by device.

    Windows for different devices are independent; the registry lock is only
    held while looking a window up, each device has its own lock for the
    buffer itself.
    """

    def __init__(
        self,
        capacity: int = WindowDefaults.CAPACITY,
        min_samples: int = WindowDefaults.MIN_SAMPLES,
        span: Optional[float] = WindowDefaults.SPAN_SECONDS,
        min_reevaluation_interval: float = WindowDefaults.MIN_REEVALUATION_INTERVAL,
        staleness_threshold: float = WindowDefaults.STALENESS_THRESHOLD,
    ):
        if min_samples < 2 or min_samples > capacity:
            raise ValueError("min_samples must be in [2, capacity]")
        self.capacity = capacity
        self.min_samples = min_samples
        self.span = span
        self.min_reevaluation_interval = min_reevaluation_interval
        self.staleness_threshold = staleness_threshold

        self._windows: Dict[str, _DeviceWindow] = {}
        self._lock = threading.Lock()

    def _get_window(self, device_id: str) -> _DeviceWindow:
        with self._lock:
            window = self._windows.get(device_id)
            if window is None:
                window = _DeviceWindow(self.capacity)
                self._windows[device_id] = window
            return window

    def on_sample(self, sample: TelemetrySample) -> Optional[FeatureVector]:
        """
        Add a sample and evaluate the window if it is due.

        Returns:
            A FeatureVector, or None when the window is not ready yet
        """
        window = self._get_window(sample.device_id)

        with window.lock:
            if window.samples:
                gap = sample.timestamp - window.samples[-1].timestamp
                if gap > self.staleness_threshold:
                    logger.debug(
                        f"Window for {sample.device_id} stale after {gap:.1f}s gap, clearing "
                        f"{len(window.samples)} samples"
                    )
                    window.clear()

            window.samples.append(sample)

            if self.span is not None:
                cutoff = sample.timestamp - self.span
                while window.samples and window.samples[0].timestamp < cutoff:
                    window.samples.popleft()

            if len(window.samples) < self.min_samples:
                return None
            if (window.last_emitted is not None and
                    sample.timestamp - window.last_emitted < self.min_reevaluation_interval):
                return None

            vector = self._compute(sample.device_id, list(window.samples))
            if vector is None:
                return None
            window.last_emitted = sample.timestamp
            return vector

    def _compute(self, device_id: str, samples) -> Optional[FeatureVector]:
        times = np.array([s.timestamp for s in samples], dtype=float)
        signal = np.array([s.signal_strength for s in samples], dtype=float)
        t = times - times[0]

        if np.ptp(t) > 0:
            slope, intercept = np.polyfit(t, signal, 1)
            residuals = signal - (slope * t + intercept)
        else:
            # All samples share one timestamp; there is no trend to fit
            slope = 0.0
            residuals = signal - signal.mean()

        batteries = [s.battery_level for s in samples if s.battery_level is not None]
        battery_delta = batteries[-1] - batteries[0] if len(batteries) >= 2 else 0.0

        context = 0
        for s in samples:
            context |= int(s.context_flags)

        newest = samples[-1]
        vector = FeatureVector(
            device_id=device_id,
            window_timestamp=newest.timestamp,
            sample_count=len(samples),
            signal_last=float(newest.signal_strength),
            signal_mean=float(signal.mean()),
            trend_slope=float(slope),
            signal_variance=float(np.var(signal)),
            residual_std=float(np.std(residuals)),
            battery_delta=float(battery_delta),
            hour_of_day=datetime.fromtimestamp(newest.timestamp).hour,
            context_bitmask=context,
            signal_series=tuple(float(v) for v in signal),
        )
        if not vector.is_finite():
            logger.warning(f"Discarding non-finite feature vector for {device_id}")
            return None
        return vector

    def sample_count(self, device_id: str) -> int:
        with self._lock:
            window = self._windows.get(device_id)
        if window is None:
            return 0
        with window.lock:
            return len(window.samples)

    def reset(self, device_id: str) -> None:
        """Empty a device's buffer but keep tracking it."""
        with self._lock:
            window = self._windows.get(device_id)
        if window is not None:
            with window.lock:
                window.clear()

    def forget(self, device_id: str) -> None:
        """Drop all state for a device."""
        with self._lock:
            self._windows.pop(device_id, None)

    def devices(self):
        with self._lock:
            return list(self._windows.keys())
