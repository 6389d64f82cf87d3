"""
Pytest configuration and shared fixtures for linkd tests.

This module provides common fixtures for testing the engine components.
"""

import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, Generator

import pytest

# Add the parent directory to the path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from linkd.config import EngineConfig
from linkd.engine import ConnectionEngine
from linkd.event_logger import EventLogger, EventType
from linkd.models import FeatureVector
from linkd.radio import SimulatedRadioDriver
from linkd.trust_store import TrustStore
from linkd.utils.error_handling import get_error_aggregator


# ===========================================================================
# Temporary Directory Fixtures
# ===========================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="linkd_test_")
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def temp_log_file(temp_dir: Path) -> Path:
    """Provide a temporary event log path."""
    return temp_dir / "test_events.log"


@pytest.fixture(autouse=True)
def clear_error_aggregator():
    """Errors recorded by one test must not leak into the next."""
    get_error_aggregator().clear()
    yield
    get_error_aggregator().clear()


# ===========================================================================
# Component Fixtures
# ===========================================================================

@pytest.fixture
def event_logger(temp_log_file: Path) -> EventLogger:
    """Provide an EventLogger writing to a temporary file."""
    return EventLogger(str(temp_log_file))


@pytest.fixture
def populated_event_logger(event_logger: EventLogger) -> EventLogger:
    """Provide an EventLogger with some pre-existing events."""
    events = [
        (EventType.ENGINE_START, "Engine started", {"model": "logistic-1"}, None),
        (EventType.DEVICE_DISCOVERED, "Discovered phone-1", {}, "phone-1"),
        (EventType.PAIRED, "Paired phone-1", {"capabilities": ["file_transfer"]}, "phone-1"),
        (EventType.STATE_TRANSITION, "pairing -> trusted_disconnected", {}, "phone-1"),
        (EventType.DEVICE_DISCOVERED, "Discovered phone-2", {}, "phone-2"),
    ]
    for event_type, details, metadata, device_id in events:
        event_logger.log_event(event_type, details, metadata, device_id=device_id)
    return event_logger


@pytest.fixture
def trust_store(temp_dir: Path) -> TrustStore:
    """Provide a TrustStore persisting into the temporary directory."""
    return TrustStore(state_file=temp_dir / "trust.json")


@pytest.fixture
def fast_config(temp_dir: Path) -> EngineConfig:
    """Engine configuration with short timers for threaded tests."""
    return EngineConfig(
        state_dir=str(temp_dir / "state"),
        log_dir=str(temp_dir / "logs"),
        backoff_base=0.01,
        backoff_cap=0.05,
        pairing_timeout=0.2,
        prediction_timeout=0.5,
    ).validate()


@pytest.fixture
def radio() -> SimulatedRadioDriver:
    return SimulatedRadioDriver()


@pytest.fixture
def engine(fast_config: EngineConfig, radio: SimulatedRadioDriver) -> Generator[ConnectionEngine, None, None]:
    """Provide a started engine wired to the simulated radio."""
    eng = ConnectionEngine(fast_config, radio=radio)
    eng.start()
    yield eng
    eng.stop()


# ===========================================================================
# Utility Fixtures
# ===========================================================================

def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0,
                interval: float = 0.01) -> bool:
    """Poll predicate until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    return _wait_until


@pytest.fixture
def make_vector() -> Callable[..., FeatureVector]:
    """Factory for feature vectors with sensible defaults."""
    def _make(device_id: str = "phone-1", **overrides) -> FeatureVector:
        fields = dict(
            device_id=device_id,
            window_timestamp=time.time(),
            sample_count=10,
            signal_last=-60.0,
            signal_mean=-60.0,
            trend_slope=0.0,
            signal_variance=0.0,
            residual_std=0.0,
            battery_delta=0.0,
            hour_of_day=12,
            context_bitmask=0,
            signal_series=(-60.0,) * 10,
        )
        fields.update(overrides)
        return FeatureVector(**fields)
    return _make


# ===========================================================================
# Markers Registration
# ===========================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "security: Security-specific tests")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")
