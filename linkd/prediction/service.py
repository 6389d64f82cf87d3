"""
Prediction Service - Runs the loaded model under a time bound.

predict() is strict and raises PredictionError subclasses. estimate() is
what the engine uses on the hot path: if the model is missing, slow or
faulty it answers from the threshold heuristic and marks the result as a
fallback. submit() runs estimate() asynchronously and hands the outcome to
a callback.
"""

import logging
import math
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Dict, Optional

from ..constants import Limits, Thresholds, Timeouts
from ..exceptions import (
    InvalidInputError,
    ModelUnavailableError,
    PredictionError,
    PredictionTimeoutError,
)
from ..models import FeatureVector, PredictionResult
from ..utils.error_handling import ErrorCategory, handle_error, log_prediction_error
from .models import PredictiveModel, ThresholdHeuristicModel

logger = logging.getLogger(__name__)

PredictionCallback = Callable[[Optional[PredictionResult], Optional[Exception]], None]


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class PredictionService:
    """Time-bounded model execution with heuristic fallback."""

    def __init__(
        self,
        model: Optional[PredictiveModel] = None,
        timeout: float = Timeouts.PREDICTION,
        heuristic: Optional[PredictiveModel] = None,
        max_workers: int = Limits.PREDICTION_WORKERS,
    ):
        self.timeout = timeout
        self._model = model
        self._heuristic = heuristic or ThresholdHeuristicModel()
        self._model_lock = threading.Lock()
        self._stats = Counter()
        self._stats_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix='linkd-model')
        self._dispatcher = ThreadPoolExecutor(max_workers=max_workers,
                                              thread_name_prefix='linkd-predict')
        self._shutdown = False

    # -------------------------------------------------------------------------
    # Model management
    # -------------------------------------------------------------------------

    def load_model(self, model: PredictiveModel) -> None:
        """Swap in a new model. In-flight predictions finish on the old one."""
        with self._model_lock:
            previous = self._model
            self._model = model
        logger.info(
            f"Loaded {model.kind} model {model.version}"
            + (f" (replacing {previous.version})" if previous else "")
        )

    def unload_model(self) -> None:
        with self._model_lock:
            previous = self._model
            self._model = None
        if previous:
            logger.info(f"Unloaded model {previous.version}")

    @property
    def model(self) -> Optional[PredictiveModel]:
        with self._model_lock:
            return self._model

    @property
    def model_version(self) -> Optional[str]:
        model = self.model
        return model.version if model else None

    # -------------------------------------------------------------------------
    # Prediction
    # -------------------------------------------------------------------------

    def predict(self, vector: FeatureVector) -> PredictionResult:
        """
        Score a vector with the loaded model.

        Raises:
            ModelUnavailableError: no model loaded
            InvalidInputError: vector has non-finite values
            PredictionTimeoutError: model exceeded the timeout
            PredictionError: model raised or returned garbage
        """
        model = self.model
        if model is None:
            raise ModelUnavailableError("No prediction model loaded", reason="unavailable",
                                        device_id=vector.device_id)
        if not vector.is_finite():
            self._count('invalid')
            raise InvalidInputError("Feature vector contains non-finite values",
                                    reason="invalid_input", device_id=vector.device_id)

        future = self._executor.submit(model.score, vector)
        try:
            probability, confidence = future.result(timeout=self.timeout)
            probability, confidence = float(probability), float(confidence)
        except FuturesTimeoutError as e:
            future.cancel()
            self._count('timeouts')
            raise PredictionTimeoutError(
                f"Model {model.version} did not answer within {self.timeout}s",
                reason="timeout", device_id=vector.device_id,
            ) from e
        except Exception as e:
            self._count('model_faults')
            raise PredictionError(f"Model {model.version} failed: {e}", reason="model_fault",
                                  device_id=vector.device_id) from e

        if not (math.isfinite(probability) and math.isfinite(confidence)):
            self._count('model_faults')
            raise PredictionError(f"Model {model.version} returned non-finite output",
                                  reason="model_fault", device_id=vector.device_id)

        self._count('predictions')
        return PredictionResult(
            device_id=vector.device_id,
            probability=_clamp_unit(probability),
            confidence=_clamp_unit(confidence),
            model_version=model.version,
            timestamp=vector.window_timestamp,
        )

    def estimate(self, vector: FeatureVector) -> PredictionResult:
        """
        Like predict(), but answer from the heuristic when the model cannot.

        Raises:
            InvalidInputError: vector has non-finite values
        """
        try:
            return self.predict(vector)
        except InvalidInputError:
            raise
        except PredictionError as e:
            log_prediction_error(e, "estimate", device_id=vector.device_id,
                                 fallback=self._heuristic.version)
            return self.fallback(vector)

    def fallback(self, vector: FeatureVector) -> PredictionResult:
        """Deterministic low-confidence answer from the heuristic."""
        probability, confidence = self._heuristic.score(vector)
        self._count('fallbacks')
        return PredictionResult(
            device_id=vector.device_id,
            probability=_clamp_unit(probability),
            confidence=min(_clamp_unit(confidence), Thresholds.HEURISTIC_CONFIDENCE),
            model_version=self._heuristic.version,
            timestamp=vector.window_timestamp,
            fallback=True,
        )

    def submit(self, vector: FeatureVector, callback: PredictionCallback) -> Future:
        """
        Run estimate() in the background.

        The callback receives ``(result, None)`` or ``(None, error)``. A
        cancelled future never calls back.
        """
        def run() -> Optional[PredictionResult]:
            try:
                result = self.estimate(vector)
            except Exception as e:
                self._deliver(callback, None, e, vector.device_id)
                return None
            self._deliver(callback, result, None, vector.device_id)
            return result

        return self._dispatcher.submit(run)

    def _deliver(self, callback: PredictionCallback, result, error, device_id: str) -> None:
        try:
            callback(result, error)
        except Exception as e:
            handle_error(e, "prediction_callback", ErrorCategory.INTERNAL, device_id=device_id)

    # -------------------------------------------------------------------------
    # Lifecycle / stats
    # -------------------------------------------------------------------------

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats['model_version'] = self.model_version
        return stats

    def shutdown(self, wait: bool = True) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        self._dispatcher.shutdown(wait=wait, cancel_futures=True)
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("Prediction service stopped")
