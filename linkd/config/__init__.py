"""
Configuration Module for the Connection Intelligence Engine.

Provides:
- EngineConfig dataclass with defaults from linkd.constants
- YAML/JSON loading with LINKD_* environment overrides
- Validation raising ConfigError
"""

from .engine_config import (
    ConfigFormat,
    EngineConfig,
    ProfileRules,
    MODEL_KINDS,
    load_config,
    save_config,
)

__all__ = [
    'ConfigFormat',
    'EngineConfig',
    'ProfileRules',
    'MODEL_KINDS',
    'load_config',
    'save_config',
]
