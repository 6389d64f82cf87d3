"""
Radio drivers consumed by the engine.
"""

from .driver import RadioDriver, RadioListener, RadioReading
from .simulated import SimulatedRadioDriver, decay_trace

__all__ = [
    'RadioDriver',
    'RadioListener',
    'RadioReading',
    'SimulatedRadioDriver',
    'decay_trace',
]
