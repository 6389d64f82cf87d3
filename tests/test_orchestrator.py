"""
Tests for linkd/orchestrator - Per-device connection state machine

Tests cover:
- Pairing, pairing failures and pairing timeout
- Preemptive reconnect on predicted decay
- Failure counting, backoff and blocking
- Revocation and user disconnect
- Profile driven threshold changes
- Fault isolation between devices
- Restart recovery
"""

import os
import threading
import time
from typing import List, Optional, Tuple

import pytest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from linkd.config import EngineConfig
from linkd.event_logger import EventLogger, EventType
from linkd.exceptions import TokenMismatchError, TrustError
from linkd.models import (
    Capability,
    ConnectionState as S,
    Device,
    FeatureVector,
    Profile,
    ProfileEvidence,
    ProfileKind,
    SessionEndReason,
    TelemetrySample,
)
from linkd.orchestrator import ConnectionOrchestrator
from linkd.prediction import LogisticModel, PredictionService, PredictiveModel
from linkd.profile_classifier import PROFILE_ACTIONS
from linkd.radio import RadioListener, SimulatedRadioDriver, decay_trace
from linkd.state_store import DeviceStateStore
from linkd.telemetry import FeatureWindow
from linkd.trust_store import TrustStore


class FixedModel(PredictiveModel):
    kind = 'fixed'

    def __init__(self, probability: float, confidence: float,
                 release: Optional[threading.Event] = None):
        super().__init__('fixed-1')
        self.output = (probability, confidence)
        self.release = release
        self.started = threading.Event()

    def score(self, vector):
        self.started.set()
        if self.release is not None:
            self.release.wait(timeout=2.0)
        return self.output

    def parameters(self):
        return {}


class FaultyRadio(SimulatedRadioDriver):
    """Radio whose connect crashes for selected devices."""

    def __init__(self, broken):
        super().__init__()
        self.broken = set(broken)

    def connect(self, device_id):
        if device_id in self.broken:
            raise RuntimeError("driver crashed")
        super().connect(device_id)


class Harness(RadioListener):
    """Orchestrator with real collaborators on temporary storage, listening to the radio."""

    def __init__(self, config: EngineConfig, radio: SimulatedRadioDriver,
                 model: Optional[PredictiveModel] = None,
                 trust_store: Optional[TrustStore] = None):
        self.config = config
        self.radio = radio
        self.trust = trust_store or TrustStore(state_file=config.trust_file)
        self.state_store = DeviceStateStore(config.device_state_file)
        self.event_logger = EventLogger(str(config.event_log_file))
        self.prediction = PredictionService(model=model or LogisticModel(),
                                            timeout=config.prediction_timeout)
        self.orchestrator = ConnectionOrchestrator(
            config, self.trust, self.prediction, radio=radio,
            state_store=self.state_store, event_logger=self.event_logger,
        )
        self.transitions: List[Tuple[str, S, S]] = []
        self._lock = threading.Lock()
        self.orchestrator.register_transition_callback(self._record)
        radio.attach(self)

    def on_signal_sample(self, device_id, reading):
        pass

    def on_link_lost(self, device_id):
        self.orchestrator.on_link_lost(device_id)

    def _record(self, device_id, old, new, trigger, reason):
        with self._lock:
            self.transitions.append((device_id, old, new))

    def seen(self, device_id: str, old: S, new: S) -> bool:
        with self._lock:
            return (device_id, old, new) in self.transitions

    def count(self, device_id: str, new: S) -> int:
        with self._lock:
            return sum(1 for d, _, n in self.transitions if d == device_id and n == new)

    def state(self, device_id: str) -> Optional[S]:
        return self.orchestrator.get_state(device_id)

    def pair(self, device_id: str = "phone-1"):
        token = self.orchestrator.begin_pairing(device_id)
        return self.orchestrator.pair(device_id, token)

    def stop(self):
        self.orchestrator.stop()
        self.prediction.shutdown()


def decay_vectors(device_id: str, end_time: float, start_dbm: float = -60.0,
                  end_dbm: float = -95.0) -> List[FeatureVector]:
    """Vectors a default feature window emits for a 30 second signal decay."""
    window = FeatureWindow(min_samples=5, min_reevaluation_interval=2.0)
    vectors = []
    for reading in decay_trace(start_dbm, end_dbm, duration=30.0, count=10,
                               start_time=end_time - 30.0):
        vector = window.on_sample(TelemetrySample(device_id, reading.timestamp, reading.rssi))
        if vector is not None:
            vectors.append(vector)
    return vectors


def profile_of(kind: ProfileKind) -> Profile:
    evidence = ProfileEvidence(network_identity=None, ssid_match=None, hour=12,
                               time_window_match=False, location_delta=0.0,
                               moving=kind == ProfileKind.TRAVELING, rule='test')
    return Profile(kind=kind, evidence=evidence, actions=PROFILE_ACTIONS[kind])


@pytest.fixture
def harness(fast_config, radio):
    h = Harness(fast_config, radio)
    h.orchestrator.start()
    yield h
    h.stop()


@pytest.fixture
def connected(harness, wait_until):
    """Harness with phone-1 paired and connected."""
    harness.pair("phone-1")
    assert wait_until(lambda: harness.state("phone-1") == S.CONNECTED)
    return harness


class TestPairing:
    """Tests for pairing through the orchestrator."""

    @pytest.mark.integration
    def test_pair_and_auto_connect(self, harness, wait_until):
        harness.orchestrator.ensure_device("phone-1", "Phone")
        assert harness.state("phone-1") == S.DISCOVERED

        token = harness.orchestrator.begin_pairing("phone-1")
        assert harness.state("phone-1") == S.PAIRING
        record = harness.orchestrator.pair("phone-1", token)
        assert record.allows("file_transfer")

        assert wait_until(lambda: harness.state("phone-1") == S.CONNECTED)
        device = harness.orchestrator.get_device("phone-1")
        assert device.active_session.session_id == 1
        assert device.display_name == "Phone"
        assert harness.radio.is_connected("phone-1")
        assert harness.seen("phone-1", S.PAIRING, S.TRUSTED_DISCONNECTED)

    @pytest.mark.integration
    def test_wrong_token_keeps_pairing(self, harness):
        harness.orchestrator.begin_pairing("phone-1")
        with pytest.raises(TokenMismatchError):
            harness.orchestrator.pair("phone-1", "guess")
        assert harness.state("phone-1") == S.PAIRING
        assert not harness.trust.is_paired("phone-1")
        failures = harness.event_logger.get_events_by_type(EventType.PAIRING_FAILED)
        assert failures[0].metadata['reason'] == "token_mismatch"

    @pytest.mark.integration
    def test_begin_pairing_rejected_when_trusted(self, connected):
        with pytest.raises(TrustError) as exc_info:
            connected.orchestrator.begin_pairing("phone-1")
        assert exc_info.value.reason == "invalid_state"

    @pytest.mark.integration
    def test_pairing_timeout(self, harness, wait_until):
        token = harness.orchestrator.begin_pairing("phone-1")
        assert wait_until(lambda: harness.state("phone-1") == S.DISCOVERED, timeout=2.0)
        assert not harness.trust.has_pending_exchange("phone-1")
        with pytest.raises(TokenMismatchError):
            harness.orchestrator.pair("phone-1", token)

    @pytest.mark.integration
    def test_pairing_before_timeout_cancels_timer(self, harness):
        harness.pair("phone-1")
        time.sleep(0.4)
        assert harness.state("phone-1") != S.DISCOVERED
        assert harness.trust.is_paired("phone-1")

    @pytest.mark.integration
    def test_no_auto_connect(self, temp_dir, radio):
        config = EngineConfig(state_dir=str(temp_dir / "s"), log_dir=str(temp_dir / "l"),
                              auto_connect=False)
        h = Harness(config, radio)
        h.orchestrator.start()
        try:
            h.pair("phone-1")
            time.sleep(0.2)
            assert h.state("phone-1") == S.TRUSTED_DISCONNECTED
            assert radio.calls('connect') == []
        finally:
            h.stop()


class TestPreemptiveReconnect:
    """Tests for prediction driven decisions."""

    @pytest.mark.integration
    def test_decay_triggers_preemptive_reconnect(self, connected, wait_until):
        for vector in decay_vectors("phone-1", time.time()):
            connected.orchestrator.on_feature_vector(vector)

        assert wait_until(lambda: connected.seen("phone-1", S.CONNECTED, S.PREEMPTIVE_RECONNECT))
        assert connected.radio.calls('prepare_standby') == [('prepare_standby', 'phone-1')]
        assert wait_until(lambda: connected.state("phone-1") == S.CONNECTED
                          and connected.count("phone-1", S.CONNECTED) == 2)

        device = connected.orchestrator.get_device("phone-1")
        assert device.sessions[0].end_reason == SessionEndReason.PREEMPTIVE
        assert device.active_session.session_id == 2
        assert device.failure_count == 0

    @pytest.mark.integration
    def test_cooldown_limits_preemptive_reconnects(self, connected, wait_until):
        now = time.time()
        for vector in decay_vectors("phone-1", now):
            connected.orchestrator.on_feature_vector(vector)
        assert wait_until(lambda: connected.count("phone-1", S.CONNECTED) == 2)

        for vector in decay_vectors("phone-1", now + 1.0):
            connected.orchestrator.on_feature_vector(vector)
        time.sleep(0.3)
        assert connected.count("phone-1", S.PREEMPTIVE_RECONNECT) == 1

    @pytest.mark.integration
    def test_healthy_link_stays_connected(self, connected, wait_until):
        for vector in decay_vectors("phone-1", time.time(), start_dbm=-55.0, end_dbm=-58.0):
            connected.orchestrator.on_feature_vector(vector)
        assert wait_until(
            lambda: connected.orchestrator.get_device("phone-1").last_prediction is not None)
        time.sleep(0.1)
        assert connected.state("phone-1") == S.CONNECTED
        assert connected.count("phone-1", S.PREEMPTIVE_RECONNECT) == 0
        assert connected.orchestrator.get_device("phone-1").last_prediction.probability < 0.1

    @pytest.mark.integration
    def test_stale_prediction_ignored(self, connected, wait_until):
        for vector in decay_vectors("phone-1", time.time() - 120.0):
            connected.orchestrator.on_feature_vector(vector)
        assert wait_until(
            lambda: connected.orchestrator.get_device("phone-1").last_prediction is not None)
        time.sleep(0.1)
        assert connected.count("phone-1", S.PREEMPTIVE_RECONNECT) == 0

    @pytest.mark.integration
    def test_vectors_ignored_while_not_connected(self, harness):
        harness.orchestrator.ensure_device("phone-1")
        for vector in decay_vectors("phone-1", time.time()):
            harness.orchestrator.on_feature_vector(vector)
        time.sleep(0.2)
        assert harness.orchestrator.get_device("phone-1").last_prediction is None
        assert harness.state("phone-1") == S.DISCOVERED

    @pytest.mark.integration
    def test_eager_profile_lowers_threshold(self, fast_config, radio, wait_until, make_vector):
        h = Harness(fast_config, radio, model=FixedModel(0.65, 0.9))
        h.orchestrator.start()
        try:
            h.pair("phone-1")
            assert wait_until(lambda: h.state("phone-1") == S.CONNECTED)

            h.orchestrator.on_feature_vector(make_vector("phone-1"))
            assert wait_until(
                lambda: h.orchestrator.get_device("phone-1").last_prediction is not None)
            time.sleep(0.1)
            assert h.count("phone-1", S.PREEMPTIVE_RECONNECT) == 0

            h.orchestrator.set_profile(profile_of(ProfileKind.TRAVELING))
            assert wait_until(lambda: h.count("phone-1", S.PREEMPTIVE_RECONNECT) == 1)
            assert h.orchestrator.profile.kind == ProfileKind.TRAVELING
        finally:
            h.stop()

    @pytest.mark.integration
    def test_low_confidence_never_acts(self, fast_config, radio, wait_until, make_vector):
        h = Harness(fast_config, radio, model=FixedModel(0.99, 0.2))
        h.orchestrator.start()
        try:
            h.pair("phone-1")
            assert wait_until(lambda: h.state("phone-1") == S.CONNECTED)
            h.orchestrator.on_feature_vector(make_vector("phone-1"))
            assert wait_until(
                lambda: h.orchestrator.get_device("phone-1").last_prediction is not None)
            time.sleep(0.1)
            assert h.state("phone-1") == S.CONNECTED
        finally:
            h.stop()

    @pytest.mark.integration
    def test_in_flight_prediction_discarded_after_link_loss(self, fast_config, radio, wait_until,
                                                            make_vector):
        release = threading.Event()
        model = FixedModel(0.99, 0.9, release=release)
        h = Harness(fast_config, radio, model=model)
        h.orchestrator.start()
        try:
            h.pair("phone-1")
            assert wait_until(lambda: h.state("phone-1") == S.CONNECTED)
            h.orchestrator.on_feature_vector(make_vector("phone-1"))
            assert model.started.wait(timeout=2.0)

            radio.drop_link("phone-1")
            assert wait_until(lambda: h.seen("phone-1", S.CONNECTED, S.DISCONNECTED)
                              and h.state("phone-1") == S.CONNECTED)
            release.set()
            time.sleep(0.3)

            assert h.count("phone-1", S.PREEMPTIVE_RECONNECT) == 0
            assert h.orchestrator.get_device("phone-1").last_prediction is None
            assert h.orchestrator.get_device("phone-1").active_session.session_id == 2
        finally:
            release.set()
            h.stop()

    @pytest.mark.integration
    def test_fallback_predictions_audited(self, fast_config, radio, wait_until, make_vector):
        h = Harness(fast_config, radio)
        h.prediction.unload_model()
        h.orchestrator.start()
        try:
            h.pair("phone-1")
            assert wait_until(lambda: h.state("phone-1") == S.CONNECTED)
            h.orchestrator.on_feature_vector(make_vector("phone-1", signal_last=-110.0))
            assert wait_until(lambda: h.event_logger.get_events_by_type(
                EventType.PREDICTION_FALLBACK, device_id="phone-1"))
            # Fallback confidence is too low to act on
            time.sleep(0.1)
            assert h.state("phone-1") == S.CONNECTED
        finally:
            h.stop()


class TestFailures:
    """Tests for failure counting, backoff and blocking."""

    @pytest.mark.integration
    def test_repeated_link_loss_blocks(self, connected, wait_until):
        session_ids = []
        for attempt in range(1, 5):
            assert wait_until(lambda: connected.state("phone-1") == S.CONNECTED)
            session_ids.append(connected.orchestrator.get_device("phone-1").active_session.session_id)
            connected.radio.drop_link("phone-1")
            if attempt < 4:
                assert wait_until(lambda: connected.count("phone-1", S.CONNECTED) == attempt + 1)

        assert wait_until(lambda: connected.state("phone-1") == S.BLOCKED)
        assert session_ids == [1, 2, 3, 4]
        assert not connected.trust.is_paired("phone-1")
        assert connected.trust.authorize("phone-1", Capability.FILE_TRANSFER) is False
        assert connected.trust.get_record("phone-1").revoke_reason == "retries_exhausted"

        device = connected.orchestrator.get_device("phone-1")
        assert [s.end_reason for s in device.sessions] == [SessionEndReason.LOST] * 4

    @pytest.mark.integration
    def test_connect_failures_back_off_then_recover(self, harness, wait_until):
        harness.radio.fail_next_connects("phone-1", 2)
        harness.pair("phone-1")
        assert wait_until(lambda: harness.state("phone-1") == S.CONNECTED)
        assert len(harness.radio.calls('connect')) == 3
        assert harness.orchestrator.get_device("phone-1").failure_count == 2

    @pytest.mark.integration
    def test_unreachable_device_blocks(self, harness, wait_until):
        harness.radio.set_reachable("phone-1", False)
        harness.pair("phone-1")
        assert wait_until(lambda: harness.state("phone-1") == S.BLOCKED)
        # One initial attempt plus max_reconnect_retries retries
        assert len(harness.radio.calls('connect')) == 4
        assert not harness.trust.is_paired("phone-1")

    @pytest.mark.integration
    def test_stable_connection_clears_failures(self, temp_dir, radio, wait_until):
        config = EngineConfig(state_dir=str(temp_dir / "s"), log_dir=str(temp_dir / "l"),
                              backoff_base=0.01, backoff_cap=0.05,
                              stable_connection_period=0.1)
        h = Harness(config, radio)
        h.orchestrator.start()
        try:
            h.pair("phone-1")
            assert wait_until(lambda: h.state("phone-1") == S.CONNECTED)
            radio.drop_link("phone-1")
            assert wait_until(lambda: h.count("phone-1", S.CONNECTED) == 2)
            assert wait_until(lambda: h.orchestrator.get_device("phone-1").failure_count == 0)
        finally:
            h.stop()

    @pytest.mark.integration
    def test_fault_isolated_to_device(self, fast_config, wait_until):
        radio = FaultyRadio(broken={"broken-1"})
        h = Harness(fast_config, radio)
        h.orchestrator.start()
        try:
            h.pair("broken-1")
            h.pair("phone-1")
            assert wait_until(lambda: h.state("phone-1") == S.CONNECTED)
            assert wait_until(lambda: h.state("broken-1") == S.BLOCKED)
            assert h.state("phone-1") == S.CONNECTED
            assert h.seen("broken-1", S.TRUSTED_DISCONNECTED, S.DISCONNECTED)
        finally:
            h.stop()

    @pytest.mark.integration
    def test_telemetry_flood_does_not_starve_link_loss(self, temp_dir, radio, wait_until,
                                                        make_vector):
        config = EngineConfig(state_dir=str(temp_dir / "s"), log_dir=str(temp_dir / "l"),
                              queue_capacity=4, max_reconnect_retries=0)
        h = Harness(config, radio)
        h.orchestrator.start()
        try:
            h.pair("phone-1")
            assert wait_until(lambda: h.state("phone-1") == S.CONNECTED)
            for i in range(500):
                h.orchestrator.on_feature_vector(make_vector("phone-1", signal_last=-60.0 - i % 5))
            radio.drop_link("phone-1")
            assert wait_until(lambda: h.state("phone-1") == S.BLOCKED)
        finally:
            h.stop()


class TestRevocationAndDisconnect:

    @pytest.mark.integration
    def test_revoke_while_connected(self, connected, wait_until):
        connected.orchestrator.revoke("phone-1", "stolen")
        assert wait_until(lambda: connected.state("phone-1") == S.BLOCKED)
        device = connected.orchestrator.get_device("phone-1")
        assert device.active_session is None
        assert device.sessions[-1].end_reason == SessionEndReason.REVOKED
        assert ('disconnect', 'phone-1') in connected.radio.calls('disconnect')
        assert connected.trust.authorize("phone-1", Capability.AUDIO_ROUTING) is False

    @pytest.mark.integration
    def test_repair_after_block(self, connected, wait_until):
        connected.orchestrator.revoke("phone-1", "user")
        assert wait_until(lambda: connected.state("phone-1") == S.BLOCKED)
        connected.pair("phone-1")
        assert wait_until(lambda: connected.state("phone-1") == S.CONNECTED)
        device = connected.orchestrator.get_device("phone-1")
        assert device.active_session.session_id == 2
        assert connected.seen("phone-1", S.BLOCKED, S.PAIRING)

    @pytest.mark.integration
    def test_user_disconnect(self, connected, wait_until):
        connected.orchestrator.disconnect("phone-1")
        assert wait_until(lambda: connected.state("phone-1") == S.TRUSTED_DISCONNECTED)
        time.sleep(0.1)
        assert connected.state("phone-1") == S.TRUSTED_DISCONNECTED
        device = connected.orchestrator.get_device("phone-1")
        assert device.sessions[-1].end_reason == SessionEndReason.USER
        assert connected.trust.is_paired("phone-1")

        connected.orchestrator.connect("phone-1")
        assert wait_until(lambda: connected.state("phone-1") == S.CONNECTED)
        assert connected.orchestrator.get_device("phone-1").active_session.session_id == 2

    @pytest.mark.integration
    def test_link_loss_ignored_when_not_connected(self, harness):
        harness.orchestrator.ensure_device("phone-1")
        harness.orchestrator.on_link_lost("phone-1")
        harness.orchestrator.on_link_lost("never-seen")
        time.sleep(0.1)
        assert harness.state("phone-1") == S.DISCOVERED
        assert harness.state("never-seen") is None

    @pytest.mark.integration
    @pytest.mark.security
    def test_pair_applies_queued_revocation_first(self, fast_config, radio, wait_until):
        h = Harness(fast_config, radio)
        h.pair("phone-1")
        h.trust.revoke("phone-1", "lost")
        # Workers are not running yet, so the revocation is still queued
        token = h.trust.issue_pairing_token("phone-1")
        h.orchestrator.pair("phone-1", token)
        assert h.seen("phone-1", S.TRUSTED_DISCONNECTED, S.BLOCKED)
        assert h.state("phone-1") == S.TRUSTED_DISCONNECTED

        h.orchestrator.start()
        try:
            assert wait_until(lambda: h.state("phone-1") == S.CONNECTED)
            time.sleep(0.1)
            assert h.state("phone-1") == S.CONNECTED
            assert h.count("phone-1", S.BLOCKED) == 1
            assert h.trust.is_paired("phone-1")
        finally:
            h.stop()


class TestRestart:

    @pytest.mark.unit
    def test_start_after_stop_rejected(self, fast_config, radio):
        h = Harness(fast_config, radio)
        h.orchestrator.start()
        h.stop()
        with pytest.raises(RuntimeError):
            h.orchestrator.start()

    @pytest.mark.integration
    def test_resume_after_restart(self, fast_config, wait_until):
        first = Harness(fast_config, SimulatedRadioDriver())
        first.orchestrator.start()
        first.pair("phone-1")
        assert wait_until(lambda: first.state("phone-1") == S.CONNECTED)
        first.stop()

        radio = SimulatedRadioDriver()
        second = Harness(fast_config, radio, trust_store=TrustStore(state_file=fast_config.trust_file))
        devices = second.state_store.load()
        assert devices["phone-1"].state == S.TRUSTED_DISCONNECTED
        assert devices["phone-1"].sessions[-1].end_reason == SessionEndReason.SHUTDOWN

        second.orchestrator.restore(devices)
        second.orchestrator.start()
        try:
            assert wait_until(lambda: second.state("phone-1") == S.CONNECTED)
            assert second.orchestrator.get_device("phone-1").active_session.session_id == 2
        finally:
            second.stop()

    @pytest.mark.integration
    def test_restore_without_trust_record(self, fast_config):
        store = DeviceStateStore(fast_config.device_state_file)
        store.update(Device("phone-1", state=S.TRUSTED_DISCONNECTED))

        h = Harness(fast_config, SimulatedRadioDriver())
        h.orchestrator.restore(h.state_store.load())
        try:
            assert h.state("phone-1") == S.DISCOVERED
        finally:
            h.stop()

    @pytest.mark.integration
    def test_stats(self, connected):
        stats = connected.orchestrator.get_stats()
        assert stats['running'] is True
        assert stats['devices'] == 1
        assert stats['states'] == {'connected': 1}
        assert 'phone-1' in stats['queues']
