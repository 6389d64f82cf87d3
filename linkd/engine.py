"""
Connection Intelligence Engine - Wiring, lifecycle and command line entry.

Data flow:
    radio driver -> telemetry sampler -> feature window -> prediction
    service -> connection orchestrator

The profile classifier feeds the orchestrator from context updates; the
trust store backs pairing and the capability gate.
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union

from .config import EngineConfig, load_config
from .constants import Permissions
from .event_logger import EventLogger, EventType
from .exceptions import ConfigError, TelemetryError
from .logging_config import get_logger, get_logging_state, setup_logging
from .models import Capability, ConnectionState, Device, Profile, TrustRecord
from .orchestrator import CapabilityGate, ConnectionOrchestrator
from .prediction import (
    PredictionService,
    PredictiveModel,
    ThresholdHeuristicModel,
    build_model,
    load_model_artifact,
)
from .profile_classifier import ProfileClassifier
from .radio import RadioDriver, RadioListener, RadioReading, SimulatedRadioDriver, decay_trace
from .state_store import DeviceStateStore
from .telemetry import FeatureWindow, TelemetrySampler
from .trust_store import TrustStore
from .utils.error_handling import ErrorCategory, get_error_aggregator, log_storage_error, safe_execute

logger = get_logger(__name__)


class ConnectionEngine(RadioListener):
    """Owns every component and exposes the engine's public operations."""

    def __init__(self, config: Optional[EngineConfig] = None,
                 radio: Optional[RadioDriver] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or EngineConfig().validate()
        self._clock = clock
        self._running = False
        self._stopped = False
        self._lock = threading.Lock()

        state_dir = Path(self.config.state_dir)
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, Permissions.SECURE_DIR)

        self.event_logger = EventLogger(str(self.config.event_log_file))
        self.trust_store = TrustStore(
            state_file=self.config.trust_file,
            key_file=self.config.trust_key_file,
            default_capabilities=self.config.default_capabilities,
            max_pairing_attempts=self.config.max_pairing_attempts,
            clock=clock,
        )
        self.state_store = DeviceStateStore(
            self.config.device_state_file,
            session_history=self.config.session_history,
            clock=clock,
        )
        self.prediction = PredictionService(
            model=self._build_model(),
            timeout=self.config.prediction_timeout,
            heuristic=ThresholdHeuristicModel(threshold=self.config.heuristic_signal_threshold),
            max_workers=self.config.prediction_workers,
        )
        self.window = FeatureWindow(
            capacity=self.config.window_capacity,
            min_samples=self.config.window_min_samples,
            span=self.config.window_span,
            min_reevaluation_interval=self.config.min_reevaluation_interval,
            staleness_threshold=self.config.staleness_threshold,
        )
        self.orchestrator = ConnectionOrchestrator(
            config=self.config,
            trust_store=self.trust_store,
            prediction_service=self.prediction,
            state_store=self.state_store,
            event_logger=self.event_logger,
            clock=clock,
        )
        self.sampler = TelemetrySampler(
            self.window,
            on_vector=self.orchestrator.on_feature_vector,
            on_drop=self._on_telemetry_dropped,
            clock=clock,
        )
        self.classifier = ProfileClassifier(self.config.profiles)
        self.gate = CapabilityGate(self.trust_store, self.orchestrator, self.event_logger)
        self._profile: Optional[Profile] = None

        self.trust_store.register_revocation_callback(self._on_revoked)
        self.orchestrator.restore(self.state_store.load())

        self.radio: Optional[RadioDriver] = None
        if radio is not None:
            self.attach_radio(radio)

    def _build_model(self) -> Optional[PredictiveModel]:
        if self.config.model_artifact:
            with safe_execute("load_model_artifact", ErrorCategory.PREDICTION) as result:
                result.value = load_model_artifact(self.config.model_artifact,
                                                   verify_key=self.config.model_verify_key)
            if not result.success:
                logger.warning("Running with the heuristic fallback only")
            return result.value
        if self.config.model_kind == ThresholdHeuristicModel.kind:
            return ThresholdHeuristicModel(threshold=self.config.heuristic_signal_threshold)
        return build_model(self.config.model_kind)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def attach_radio(self, radio: RadioDriver) -> None:
        self.radio = radio
        radio.attach(self)
        self.orchestrator.attach_radio(radio)

    def start(self) -> None:
        """
        Start the engine.

        Raises:
            RuntimeError: the engine was stopped; build a new one instead
        """
        with self._lock:
            if self._stopped:
                raise RuntimeError("Connection engine cannot be restarted after stop()")
            if self._running:
                logger.info("Engine already running")
                return
            self._running = True
        self.orchestrator.start()
        self._audit(EventType.ENGINE_START, "Connection engine started",
                    {'model': self.prediction.model_version,
                     'devices': len(self.orchestrator.list_devices())})
        logger.info("Connection engine running")

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stopped = True
        logger.info("Stopping connection engine...")
        self.orchestrator.stop()
        self.prediction.shutdown()
        self._audit(EventType.ENGINE_STOP, "Connection engine stopped", {})
        logger.info("Connection engine stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def __enter__(self) -> 'ConnectionEngine':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    # -------------------------------------------------------------------------
    # RadioListener
    # -------------------------------------------------------------------------

    def on_signal_sample(self, device_id: str, reading: Union[RadioReading, Dict[str, Any]]) -> None:
        logger.trace(f"Reading for {device_id}: {reading}")
        self.sampler.ingest(device_id, reading)

    def on_link_lost(self, device_id: str) -> None:
        self.orchestrator.on_link_lost(device_id)

    def on_device_discovered(self, device_id: str, display_name: str = "") -> None:
        self.orchestrator.ensure_device(device_id, display_name)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def begin_pairing(self, device_id: str) -> str:
        return self.orchestrator.begin_pairing(device_id)

    def pair(self, device_id: str, token: str,
             capabilities: Optional[Iterable[str]] = None) -> TrustRecord:
        return self.orchestrator.pair(device_id, token, capabilities)

    def revoke(self, device_id: str, reason: str = "") -> None:
        self.orchestrator.revoke(device_id, reason)

    def connect(self, device_id: str) -> None:
        self.orchestrator.connect(device_id)

    def disconnect(self, device_id: str) -> None:
        self.orchestrator.disconnect(device_id)

    def is_authorized(self, device_id: str, capability: Union[Capability, str]) -> bool:
        return self.gate.is_authorized(device_id, capability)

    def update_context(self, network_identity: Optional[str], hour: Optional[int] = None,
                       location_delta: float = 0.0) -> Profile:
        """Classify the current context and propagate profile changes."""
        if hour is None:
            hour = datetime.fromtimestamp(self._clock()).hour
        profile = self.classifier.classify(network_identity, hour, location_delta)

        previous = self._profile
        self._profile = profile
        if previous is None or previous.kind != profile.kind:
            logger.notice(f"Profile changed: {previous.kind.value if previous else None} -> "
                        f"{profile.kind.value} ({profile.evidence.rule})")
            self._audit(EventType.PROFILE_CHANGE, f"Profile {profile.kind.value}",
                        profile.to_dict())
            self.orchestrator.set_profile(profile)
        return profile

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile

    def get_device(self, device_id: str) -> Optional[Device]:
        return self.orchestrator.get_device(device_id)

    def get_state(self, device_id: str) -> Optional[ConnectionState]:
        return self.orchestrator.get_state(device_id)

    def get_status(self) -> Dict[str, Any]:
        """Current engine status"""
        devices = {}
        for device_id in self.orchestrator.list_devices():
            device = self.orchestrator.get_device(device_id)
            if device is None:
                continue
            devices[device_id] = {
                'state': device.state.value,
                'failure_count': device.failure_count,
                'last_session_id': device.last_session_id,
                'session_open': device.active_session is not None,
                'last_prediction': device.last_prediction.to_dict() if device.last_prediction else None,
            }
        return {
            'running': self._running,
            'profile': self._profile.to_dict() if self._profile else None,
            'devices': devices,
            'prediction': self.prediction.get_stats(),
            'telemetry': self.sampler.get_stats(),
            'trust': self.trust_store.get_stats(),
            'orchestrator': self.orchestrator.get_stats(),
            'event_count': self.event_logger.get_event_count(),
            'errors': get_error_aggregator().get_error_summary(),
            'logging': get_logging_state(),
        }

    # -------------------------------------------------------------------------
    # Internal callbacks
    # -------------------------------------------------------------------------

    def _on_telemetry_dropped(self, device_id: str, error: TelemetryError) -> None:
        self._audit(EventType.TELEMETRY_DROPPED, f"Dropped reading: {error}",
                    {'reason': error.reason}, device_id)

    def _on_revoked(self, device_id: str, reason: str) -> None:
        logger.security(f"Trust revoked for {device_id} ({reason or 'no reason'})")
        self._audit(EventType.REVOKED, f"Trust revoked for {device_id}",
                    {'reason': reason}, device_id)

    def _audit(self, event_type: EventType, details: str, metadata: Dict,
               device_id: Optional[str] = None) -> None:
        try:
            self.event_logger.log_event(event_type, details, metadata, device_id=device_id)
        except OSError as e:
            log_storage_error(e, "audit_event", event_type=event_type.value)


# =============================================================================
# COMMAND LINE
# =============================================================================

DEMO_DEVICE = 'demo-phone'


def run_demo(engine: ConnectionEngine, radio: SimulatedRadioDriver) -> None:
    """Pair a simulated device, connect it and play a fading signal."""
    radio.discover(DEMO_DEVICE, "Demo Phone")
    if not engine.trust_store.is_paired(DEMO_DEVICE):
        token = engine.begin_pairing(DEMO_DEVICE)
        engine.pair(DEMO_DEVICE, token)
    else:
        engine.connect(DEMO_DEVICE)
    engine.update_context(None, location_delta=0.0)

    now = time.time()
    for reading in decay_trace(-60.0, -95.0, duration=30.0, count=10,
                               start_time=now - 30.0, battery=0.8):
        radio.emit_sample(DEMO_DEVICE, reading.rssi, timestamp=reading.timestamp,
                          battery=reading.battery)
        time.sleep(0.05)


def main(argv=None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description='linkd - connection intelligence engine')
    parser.add_argument('--config', type=str, default=None,
                        help='YAML or JSON configuration file')
    parser.add_argument('--state-dir', type=str, default=None,
                        help='Directory for trust and device state')
    parser.add_argument('--log-dir', type=str, default=None,
                        help='Directory for log files')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')
    parser.add_argument('--trace', action='store_true', help='Trace logging (per sample)')
    parser.add_argument('--json-logs', action='store_true', help='JSON-lines log output')
    parser.add_argument('--simulate', action='store_true',
                        help='Run against the simulated radio with a demo device')
    parser.add_argument('--status', action='store_true',
                        help='Print engine status as JSON and exit')

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        if args.state_dir:
            config.state_dir = args.state_dir
        if args.log_dir:
            config.log_dir = args.log_dir
    except ConfigError as e:
        setup_logging(verbose=args.verbose)
        logger.error(f"Invalid configuration: {e}")
        return 2

    setup_logging(
        verbose=args.verbose,
        trace=args.trace,
        log_file=str(Path(config.log_dir) / 'linkd.log'),
        json_format=args.json_logs,
    )

    radio = SimulatedRadioDriver() if args.simulate else None
    engine = ConnectionEngine(config, radio=radio)

    if args.status:
        print(json.dumps(engine.get_status(), indent=2, default=str))
        engine.prediction.shutdown()
        return 0

    shutdown = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    engine.start()
    try:
        if radio is not None:
            run_demo(engine, radio)
            time.sleep(0.5)
            print(json.dumps(engine.get_status(), indent=2, default=str))
        while not shutdown.is_set():
            shutdown.wait(1.0)
    finally:
        engine.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
