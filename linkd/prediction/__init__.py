"""
Disconnection prediction: models, artifacts and the prediction service.
"""

from .models import (
    PredictiveModel,
    ThresholdHeuristicModel,
    LogisticModel,
    TrendProjectionModel,
    MODEL_REGISTRY,
    build_model,
)
from .artifacts import load_model_artifact, save_model_artifact
from .service import PredictionService

__all__ = [
    'PredictiveModel',
    'ThresholdHeuristicModel',
    'LogisticModel',
    'TrendProjectionModel',
    'MODEL_REGISTRY',
    'build_model',
    'load_model_artifact',
    'save_model_artifact',
    'PredictionService',
]
