"""
Telemetry pipeline: raw readings -> samples -> feature vectors.
"""

from .feature_window import FeatureWindow
from .sampler import TelemetrySampler

__all__ = [
    'FeatureWindow',
    'TelemetrySampler',
]
