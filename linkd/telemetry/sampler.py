"""
Telemetry Sampler - Normalizes raw radio readings into samples.

Bad readings are dropped here and never reach the feature window. Drops are
reported through the error handler and counted per reason; nothing is
raised back to the radio driver.
"""

import logging
import math
import threading
import time
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from ..constants import Limits, SignalLimits
from ..exceptions import GarbledSampleError, OutOfOrderSampleError, TelemetryError
from ..models import ContextFlag, FeatureVector, TelemetrySample
from ..radio.driver import RadioReading
from ..utils.error_handling import log_telemetry_error
from .feature_window import FeatureWindow

logger = logging.getLogger(__name__)

VectorSink = Callable[[FeatureVector], None]
DropSink = Callable[[str, TelemetryError], None]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class TelemetrySampler:
    """Entry point for radio readings."""

    def __init__(
        self,
        window: FeatureWindow,
        on_vector: Optional[VectorSink] = None,
        on_drop: Optional[DropSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.window = window
        self.on_vector = on_vector
        self.on_drop = on_drop
        self._clock = clock
        self._last_timestamp: Dict[str, float] = {}
        self._device_locks: Dict[str, threading.Lock] = {}
        self._stats = Counter()
        self._lock = threading.Lock()

    def ingest(self, device_id: str, raw_reading: Any) -> None:
        """Normalize a reading and feed it to the feature window."""
        try:
            sample = self._normalize(device_id, raw_reading)
        except TelemetryError as e:
            self._drop(device_id, e)
            return

        # Order check, window append and hand-off stay together per device
        with self._device_lock(device_id):
            with self._lock:
                last = self._last_timestamp.get(device_id)
                in_order = last is None or sample.timestamp >= last
                if in_order:
                    self._last_timestamp[device_id] = sample.timestamp
                    self._stats['accepted'] += 1
            if in_order:
                vector = self.window.on_sample(sample)
                if vector is not None and self.on_vector:
                    self.on_vector(vector)
        if not in_order:
            self._drop(device_id, OutOfOrderSampleError(
                f"Sample at {sample.timestamp} older than last accepted {last}",
                reason="out_of_order", device_id=device_id,
            ))

    def _device_lock(self, device_id: str) -> threading.Lock:
        with self._lock:
            lock = self._device_locks.get(device_id)
            if lock is None:
                lock = self._device_locks[device_id] = threading.Lock()
            return lock

    def _drop(self, device_id: str, error: TelemetryError) -> None:
        with self._lock:
            self._stats[f"dropped_{error.reason}"] += 1
        log_telemetry_error(error, "telemetry_ingest", device_id=device_id)
        if self.on_drop:
            self.on_drop(device_id, error)

    def _normalize(self, device_id: str, raw: Any) -> TelemetrySample:
        if not isinstance(device_id, str) or not device_id.strip():
            raise GarbledSampleError("Missing device id", reason="garbled")
        if len(device_id) > Limits.MAX_DEVICE_ID_LENGTH:
            raise GarbledSampleError("Device id too long", reason="garbled", device_id=device_id[:32])

        if isinstance(raw, RadioReading):
            fields: Mapping[str, Any] = {
                'timestamp': raw.timestamp, 'rssi': raw.rssi,
                'battery': raw.battery, 'flags': raw.flags,
            }
        elif isinstance(raw, Mapping):
            fields = raw
        else:
            raise GarbledSampleError(
                f"Unsupported reading type {type(raw).__name__}",
                reason="garbled", device_id=device_id,
            )

        return TelemetrySample(
            device_id=device_id,
            timestamp=self._normalize_timestamp(device_id, fields.get('timestamp')),
            signal_strength=self._normalize_signal(device_id, fields),
            battery_level=self._normalize_battery(device_id, fields.get('battery')),
            context_flags=self._normalize_flags(device_id, fields.get('flags')),
        )

    def _normalize_timestamp(self, device_id: str, value: Any) -> float:
        if value is None:
            return self._clock()
        if isinstance(value, datetime):
            return value.timestamp()
        if not _is_number(value) or not math.isfinite(value) or value < 0:
            raise GarbledSampleError(f"Bad timestamp {value!r}", reason="garbled",
                                     device_id=device_id)
        if value > SignalLimits.MILLISECOND_EPOCH_CUTOFF:
            return float(value) / 1000.0
        return float(value)

    def _normalize_signal(self, device_id: str, fields: Mapping[str, Any]) -> float:
        value = fields.get('rssi', fields.get('signal_strength'))
        if not _is_number(value) or not math.isfinite(value):
            raise GarbledSampleError(f"Bad signal strength {value!r}", reason="garbled",
                                     device_id=device_id)
        return _clamp(float(value), SignalLimits.RSSI_MIN, SignalLimits.RSSI_MAX)

    def _normalize_battery(self, device_id: str, value: Any) -> Optional[float]:
        if value is None:
            return None
        if not _is_number(value) or not math.isfinite(value):
            raise GarbledSampleError(f"Bad battery level {value!r}", reason="garbled",
                                     device_id=device_id)
        # Floats in [0, 1] are fractions; everything else is already percent
        if isinstance(value, float) and 0.0 <= value <= 1.0:
            value = value * 100.0
        return _clamp(float(value), SignalLimits.BATTERY_MIN, SignalLimits.BATTERY_MAX)

    def _normalize_flags(self, device_id: str, value: Any) -> ContextFlag:
        if value is None:
            return ContextFlag.NONE
        if isinstance(value, ContextFlag):
            return value
        try:
            if isinstance(value, int) and not isinstance(value, bool):
                return ContextFlag(value)
            if isinstance(value, str):
                return ContextFlag.from_names(value.split(','))
            return ContextFlag.from_names(value)
        except (KeyError, TypeError, ValueError) as e:
            raise GarbledSampleError(f"Bad context flags {value!r}: {e}", reason="garbled",
                                     device_id=device_id) from e

    def forget(self, device_id: str) -> None:
        with self._lock:
            self._last_timestamp.pop(device_id, None)
            self._device_locks.pop(device_id, None)
        self.window.forget(device_id)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)
