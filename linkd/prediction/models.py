"""
Predictive Models - Disconnection scorers over feature vectors.

Every model maps a FeatureVector to (probability, confidence). Models are
immutable after construction so a loaded model can be shared by all
prediction workers without locking.
"""

import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple, Type

from ..constants import Thresholds, WindowDefaults
from ..models import ContextFlag, FeatureVector


def sigmoid(z: float) -> float:
    # Clip so math.exp cannot overflow
    z = max(-60.0, min(60.0, z))
    return 1.0 / (1.0 + math.exp(-z))


class PredictiveModel(ABC):
    """Base class for disconnection predictors."""

    kind = 'abstract'

    def __init__(self, version: str):
        self.version = version

    @abstractmethod
    def score(self, vector: FeatureVector) -> Tuple[float, float]:
        """Return (probability, confidence) that the link drops within the horizon."""

    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        pass

    def to_artifact(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'version': self.version, 'parameters': self.parameters()}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(version={self.version!r})"


class ThresholdHeuristicModel(PredictiveModel):
    """
    Signal threshold heuristic.

    Probability rises steeply as the last reading falls below the threshold.
    Confidence is fixed and low: this model is the fallback, never the
    primary decision maker.
    """

    kind = 'heuristic'

    def __init__(self, version: str = 'heuristic-1',
                 threshold: float = Thresholds.HEURISTIC_SIGNAL_DBM,
                 scale: float = 4.0,
                 confidence: float = Thresholds.HEURISTIC_CONFIDENCE):
        super().__init__(version)
        if scale <= 0:
            raise ValueError("scale must be positive")
        if not 0.0 <= confidence <= Thresholds.HEURISTIC_CONFIDENCE:
            raise ValueError(f"heuristic confidence must be <= {Thresholds.HEURISTIC_CONFIDENCE}")
        self.threshold = float(threshold)
        self.scale = float(scale)
        self.confidence = float(confidence)

    def score(self, vector: FeatureVector) -> Tuple[float, float]:
        return sigmoid((self.threshold - vector.signal_last) / self.scale), self.confidence

    def parameters(self) -> Dict[str, Any]:
        return {'threshold': self.threshold, 'scale': self.scale, 'confidence': self.confidence}


class LogisticModel(PredictiveModel):
    """
    Calibrated linear scorer.

    z = bias
        + w_signal * (signal_reference - signal_last) / signal_scale
        - w_slope * trend_slope
        - w_battery * battery_delta
        + w_interference * [WIFI_INTERFERENCE]
    probability = sigmoid(z / temperature)

    Confidence grows with the number of samples behind the vector and
    shrinks with the noise around the fitted trend.
    """

    kind = 'logistic'

    DEFAULTS = {
        'bias': -2.0,
        'w_signal': 1.0,
        'signal_reference': -80.0,
        'signal_scale': 5.0,
        'w_slope': 2.0,
        'w_battery': 0.05,
        'w_interference': 0.5,
        'temperature': 1.0,
        'noise_scale': 3.0,
        'full_confidence_samples': 2 * WindowDefaults.MIN_SAMPLES,
    }

    def __init__(self, version: str = 'logistic-1', **parameters):
        super().__init__(version)
        unknown = set(parameters) - set(self.DEFAULTS)
        if unknown:
            raise ValueError(f"Unknown logistic parameters: {sorted(unknown)}")
        params = dict(self.DEFAULTS)
        params.update(parameters)
        for name, value in params.items():
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ValueError(f"Parameter {name} must be a finite number")
        for name in ('signal_scale', 'temperature', 'noise_scale', 'full_confidence_samples'):
            if params[name] <= 0:
                raise ValueError(f"Parameter {name} must be positive")
        self._params = params

    def score(self, vector: FeatureVector) -> Tuple[float, float]:
        p = self._params
        z = p['bias']
        z += p['w_signal'] * (p['signal_reference'] - vector.signal_last) / p['signal_scale']
        z -= p['w_slope'] * vector.trend_slope
        z -= p['w_battery'] * vector.battery_delta
        if vector.context_bitmask & ContextFlag.WIFI_INTERFERENCE:
            z += p['w_interference']
        probability = sigmoid(z / p['temperature'])

        coverage = min(1.0, vector.sample_count / p['full_confidence_samples'])
        confidence = coverage / (1.0 + vector.residual_std / p['noise_scale'])
        return probability, confidence

    def parameters(self) -> Dict[str, Any]:
        return dict(self._params)


class TrendProjectionModel(PredictiveModel):
    """
    Sequence model over the window's signal series.

    The series is smoothed with an exponentially weighted moving average,
    projected ``horizon`` seconds ahead along the fitted trend, and the
    projected level is scored against the drop threshold.
    """

    kind = 'trend'

    def __init__(self, version: str = 'trend-1', alpha: float = 0.5,
                 horizon: float = Thresholds.PREDICTION_HORIZON,
                 threshold: float = -90.0, scale: float = 4.0,
                 noise_scale: float = 3.0,
                 full_confidence_samples: int = 2 * WindowDefaults.MIN_SAMPLES):
        super().__init__(version)
        if not 0.0 < alpha <= 1.0:
            raise ValueError("alpha must be in (0, 1]")
        if horizon <= 0 or scale <= 0 or noise_scale <= 0 or full_confidence_samples <= 0:
            raise ValueError("horizon, scale, noise_scale and full_confidence_samples must be positive")
        self.alpha = float(alpha)
        self.horizon = float(horizon)
        self.threshold = float(threshold)
        self.scale = float(scale)
        self.noise_scale = float(noise_scale)
        self.full_confidence_samples = int(full_confidence_samples)

    def smoothed_level(self, vector: FeatureVector) -> float:
        series = vector.signal_series or (vector.signal_last,)
        level = series[0]
        for value in series[1:]:
            level = self.alpha * value + (1.0 - self.alpha) * level
        return level

    def score(self, vector: FeatureVector) -> Tuple[float, float]:
        projected = self.smoothed_level(vector) + vector.trend_slope * self.horizon
        probability = sigmoid((self.threshold - projected) / self.scale)

        coverage = min(1.0, vector.sample_count / self.full_confidence_samples)
        confidence = coverage / (1.0 + vector.residual_std / self.noise_scale)
        return probability, confidence

    def parameters(self) -> Dict[str, Any]:
        return {
            'alpha': self.alpha,
            'horizon': self.horizon,
            'threshold': self.threshold,
            'scale': self.scale,
            'noise_scale': self.noise_scale,
            'full_confidence_samples': self.full_confidence_samples,
        }


MODEL_REGISTRY: Dict[str, Type[PredictiveModel]] = {
    ThresholdHeuristicModel.kind: ThresholdHeuristicModel,
    LogisticModel.kind: LogisticModel,
    TrendProjectionModel.kind: TrendProjectionModel,
}


def build_model(kind: str, version: str = None, **parameters) -> PredictiveModel:
    """
    Instantiate a model by kind.

    Raises:
        ValueError: unknown kind or invalid parameters
    """
    model_cls = MODEL_REGISTRY.get(kind)
    if model_cls is None:
        raise ValueError(f"Unknown model kind: {kind!r}")
    if version is not None:
        parameters['version'] = version
    try:
        return model_cls(**parameters)
    except TypeError as e:
        raise ValueError(f"Invalid parameters for {kind} model: {e}") from e
