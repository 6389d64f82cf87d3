"""
Connection Orchestrator - Per-device connection state machine.

Every device has its own event queue and worker thread; events for one
device are handled one at a time under the device lock, devices progress
independently. Radio callbacks, prediction results and timers only ever
enqueue events. Pairing calls run synchronously on the caller's thread
(under the same device lock) so trust errors reach the caller.

Decisions:
- CONNECTED -> PREEMPTIVE_RECONNECT when the latest fresh prediction is
  above the (profile adjusted) risk threshold with enough confidence and
  the cooldown has passed
- link losses and failed connects count as failures; more than
  max_reconnect_retries of them blocks the device and revokes its trust
- a session that stays up for stable_connection_period clears the count
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from ..config import EngineConfig
from ..event_logger import EventLogger, EventType
from ..exceptions import RadioError, TrustError, TrustPersistenceError
from ..models import (
    ConnectionSession,
    ConnectionState,
    Device,
    FeatureVector,
    Profile,
    ProfileAction,
    SessionEndReason,
    TrustRecord,
)
from ..prediction.service import PredictionService
from ..radio.driver import RadioDriver
from ..state_store import DeviceStateStore
from ..trust_store import TrustStore
from ..utils.error_handling import (
    ErrorCategory,
    ErrorSeverity,
    handle_error,
    log_prediction_error,
    log_radio_error,
    log_storage_error,
    log_trust_error,
)
from .event_queue import DeviceEvent, DeviceEventQueue, EventKind
from .state_machine import (
    RECONNECTABLE_STATES,
    DeviceContext,
    Trigger,
    backoff_delay,
    is_allowed,
)
from .worker import DeviceTimers, DeviceWorker

logger = logging.getLogger(__name__)

S = ConnectionState

TransitionCallback = Callable[[str, ConnectionState, ConnectionState, Trigger, str], None]

TIMER_RECONNECT = 'reconnect'
TIMER_PAIRING = 'pairing_timeout'
TIMER_STABILITY = 'stability'


class _DeviceRuntime:
    """Context plus the threads that serve it."""

    def __init__(self, context: DeviceContext, queue: DeviceEventQueue,
                 worker: DeviceWorker, timers: DeviceTimers):
        self.context = context
        self.queue = queue
        self.worker = worker
        self.timers = timers


class ConnectionOrchestrator:
    """Drives every device through its connection lifecycle."""

    def __init__(
        self,
        config: EngineConfig,
        trust_store: TrustStore,
        prediction_service: PredictionService,
        radio: Optional[RadioDriver] = None,
        state_store: Optional[DeviceStateStore] = None,
        event_logger: Optional[EventLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.trust_store = trust_store
        self.prediction = prediction_service
        self.radio = radio
        self.state_store = state_store
        self.event_logger = event_logger
        self._clock = clock

        self._devices: Dict[str, _DeviceRuntime] = {}
        self._registry_lock = threading.Lock()
        self._running = False
        self._stopped = False
        self._profile: Optional[Profile] = None

        self._transition_callbacks: Dict[int, TransitionCallback] = {}
        self._next_callback_id = 0
        self._callback_lock = threading.Lock()

        self._revocation_callback_id = trust_store.register_revocation_callback(
            self._on_trust_revoked
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Start the device workers.

        Raises:
            RuntimeError: the orchestrator was already stopped (queues are closed)
        """
        with self._registry_lock:
            if self._stopped:
                raise RuntimeError("Orchestrator cannot be restarted after stop()")
            if self._running:
                return
            self._running = True
            runtimes = list(self._devices.values())
        for runtime in runtimes:
            runtime.worker.start()
        logger.info(f"Orchestrator started with {len(runtimes)} devices")

        if self.config.auto_connect and self.radio is not None:
            for runtime in runtimes:
                if runtime.context.state == S.TRUSTED_DISCONNECTED:
                    self._enqueue(runtime, DeviceEvent(EventKind.CONNECT_REQUEST))

    def stop(self) -> None:
        """Stop workers and timers; open sessions are closed as shutdown."""
        with self._registry_lock:
            if not self._running:
                return
            self._running = False
            self._stopped = True
            runtimes = list(self._devices.values())

        for runtime in runtimes:
            runtime.timers.cancel_all()
            runtime.worker.stop()

        for runtime in runtimes:
            ctx = runtime.context
            with ctx.lock:
                ctx.cancel_prediction()
                if ctx.device.active_session is not None:
                    self._close_session(ctx, SessionEndReason.SHUTDOWN)
                    self._radio_call('disconnect', ctx.device_id)
                    self._persist(ctx)

        self.trust_store.unregister_revocation_callback(self._revocation_callback_id)
        with self._callback_lock:
            self._transition_callbacks.clear()
        logger.info("Orchestrator stopped")

    def attach_radio(self, radio: RadioDriver) -> None:
        self.radio = radio
        with self._registry_lock:
            running = self._running
            runtimes = list(self._devices.values())
        if running and self.config.auto_connect:
            for runtime in runtimes:
                if runtime.context.state in (S.TRUSTED_DISCONNECTED, S.DISCONNECTED):
                    self._enqueue(runtime, DeviceEvent(EventKind.CONNECT_REQUEST))

    # =========================================================================
    # Device registry
    # =========================================================================

    def restore(self, devices: Dict[str, Device]) -> None:
        """
        Adopt devices loaded from the state store, reconciled with the
        trust store: a trusted state without a live record cannot stand.
        """
        for device in devices.values():
            if device.state.is_trusted and not self.trust_store.is_paired(device.device_id):
                record = self.trust_store.get_record(device.device_id)
                device.state = S.BLOCKED if record is not None else S.DISCOVERED
                logger.warning(
                    f"{device.device_id} has no live trust record, restored as {device.state.value}"
                )
            elif device.state == S.BLOCKED and self.trust_store.is_paired(device.device_id):
                # Blocked devices must re-pair
                self._revoke_trust(device.device_id, 'blocked_on_restore')
            self._register(device)

    def ensure_device(self, device_id: str, display_name: str = "") -> None:
        """Start tracking a device if it is not known yet."""
        with self._registry_lock:
            if device_id in self._devices:
                return
        device = Device(device_id=device_id, display_name=display_name,
                        last_seen=self._clock())
        if self._register(device):
            self._audit(EventType.DEVICE_DISCOVERED, f"Discovered {device_id}",
                        {'display_name': display_name}, device_id)
            self._persist(self._runtime(device_id).context)

    def _register(self, device: Device) -> bool:
        ctx = DeviceContext(device=device)
        queue = DeviceEventQueue(device.device_id, capacity=self.config.queue_capacity)
        runtime = _DeviceRuntime(
            context=ctx,
            queue=queue,
            worker=DeviceWorker(device.device_id, queue,
                                handler=lambda event: self._dispatch(ctx, event)),
            timers=DeviceTimers(device.device_id),
        )
        with self._registry_lock:
            if device.device_id in self._devices:
                return False
            self._devices[device.device_id] = runtime
            running = self._running
        if running:
            runtime.worker.start()
        return True

    def _runtime(self, device_id: str) -> Optional[_DeviceRuntime]:
        with self._registry_lock:
            return self._devices.get(device_id)

    def get_device(self, device_id: str) -> Optional[Device]:
        """Snapshot copy of a device record."""
        runtime = self._runtime(device_id)
        if runtime is None:
            return None
        with runtime.context.lock:
            return Device.from_dict(runtime.context.device.to_dict())

    def get_state(self, device_id: str) -> Optional[ConnectionState]:
        runtime = self._runtime(device_id)
        return runtime.context.state if runtime else None

    def list_devices(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._devices.keys())

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile

    # =========================================================================
    # Inputs (thread-safe, non-blocking)
    # =========================================================================

    def on_feature_vector(self, vector: FeatureVector) -> None:
        self.ensure_device(vector.device_id)
        self._enqueue(self._runtime(vector.device_id), DeviceEvent(EventKind.VECTOR, vector))

    def on_link_lost(self, device_id: str) -> None:
        runtime = self._runtime(device_id)
        if runtime is None:
            logger.debug(f"Link lost for unknown device {device_id}, ignored")
            return
        self._enqueue(runtime, DeviceEvent(EventKind.LINK_LOST))

    def connect(self, device_id: str) -> None:
        runtime = self._runtime(device_id)
        if runtime is not None:
            self._enqueue(runtime, DeviceEvent(EventKind.CONNECT_REQUEST))

    def disconnect(self, device_id: str) -> None:
        """User-requested disconnect."""
        runtime = self._runtime(device_id)
        if runtime is not None:
            self._enqueue(runtime, DeviceEvent(EventKind.USER_DISCONNECT))

    def set_profile(self, profile: Profile) -> None:
        """Deliver a profile change to every device."""
        self._profile = profile
        with self._registry_lock:
            runtimes = list(self._devices.values())
        for runtime in runtimes:
            self._enqueue(runtime, DeviceEvent(EventKind.PROFILE_CHANGED, profile))

    def _on_trust_revoked(self, device_id: str, reason: str) -> None:
        runtime = self._runtime(device_id)
        if runtime is not None:
            self._enqueue(runtime, DeviceEvent(EventKind.REVOKED, reason))

    def _enqueue(self, runtime: Optional[_DeviceRuntime], event: DeviceEvent) -> bool:
        if runtime is None:
            return False
        return runtime.queue.put(event)

    # =========================================================================
    # Pairing (synchronous, raises TrustError)
    # =========================================================================

    def begin_pairing(self, device_id: str) -> str:
        """
        Open a pairing exchange and return the one-time token to show the user.

        Raises:
            TrustError: device is in a state that cannot start pairing
        """
        self.ensure_device(device_id)
        runtime = self._runtime(device_id)
        ctx = runtime.context
        with ctx.lock:
            if ctx.state not in (S.DISCOVERED, S.BLOCKED, S.PAIRING):
                raise TrustError(f"Cannot pair {device_id} in state {ctx.state.value}",
                                 reason="invalid_state", device_id=device_id)
            token = self.trust_store.issue_pairing_token(device_id)
            if ctx.state != S.PAIRING:
                self._transition(ctx, S.PAIRING, Trigger.BEGIN_PAIRING)
            epoch = ctx.epoch
            runtime.timers.schedule(
                TIMER_PAIRING, self.config.pairing_timeout,
                lambda: self._enqueue(runtime, DeviceEvent(EventKind.PAIRING_TIMEOUT, epoch=epoch)),
            )
        return token

    def pair(self, device_id: str, token: str, capabilities: Optional[Iterable[str]] = None) -> TrustRecord:
        """
        Complete pairing with the token presented by the device.

        Raises:
            AlreadyPairedError, TokenMismatchError, TrustPersistenceError
        """
        self.ensure_device(device_id)
        runtime = self._runtime(device_id)
        ctx = runtime.context
        with ctx.lock:
            previous = self.trust_store.get_record(device_id)
            if previous is not None and previous.revoked and ctx.state.is_trusted:
                # Revocation still queued for the worker; apply it first
                self._apply_revocation(ctx, previous.revoke_reason, cancel_exchange=False)
            try:
                record = self.trust_store.pair(device_id, token, capabilities)
            except TrustError as e:
                log_trust_error(e, "pair", device_id=device_id)
                self._audit(EventType.PAIRING_FAILED, f"Pairing failed for {device_id}: {e.reason}",
                            {'reason': e.reason}, device_id)
                raise

            runtime.timers.cancel(TIMER_PAIRING)
            if ctx.state in (S.DISCOVERED, S.BLOCKED):
                self._transition(ctx, S.PAIRING, Trigger.BEGIN_PAIRING)
            ctx.device.failure_count = 0
            self._transition(ctx, S.TRUSTED_DISCONNECTED, Trigger.PAIRED)
            self._audit(EventType.PAIRED, f"Paired {device_id}",
                        {'capabilities': sorted(record.capabilities)}, device_id)

        if self.config.auto_connect and self.radio is not None:
            self._enqueue(runtime, DeviceEvent(EventKind.CONNECT_REQUEST))
        return record

    def revoke(self, device_id: str, reason: str = "") -> None:
        """Revoke trust; the device moves to BLOCKED via the revocation callback."""
        self.trust_store.revoke(device_id, reason)

    # =========================================================================
    # Event handling (device worker thread)
    # =========================================================================

    def _dispatch(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        handler = self._handlers.get(event.kind)
        with ctx.lock:
            try:
                handler(self, ctx, event)
            except Exception as e:
                handle_error(e, f"handle_{event.kind.value}", ErrorCategory.INTERNAL,
                             device_id=ctx.device_id)
                self._handle_fault(ctx, e)

    def _on_vector(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        vector: FeatureVector = event.payload
        ctx.device.last_seen = max(ctx.device.last_seen or 0.0, vector.window_timestamp)
        if not ctx.state.accepts_predictions:
            return
        if ctx.in_flight is not None and not ctx.in_flight.done():
            # Latest wins
            ctx.pending_vector = vector
            return
        self._submit_prediction(ctx, vector)

    def _submit_prediction(self, ctx: DeviceContext, vector: FeatureVector) -> None:
        runtime = self._runtime(ctx.device_id)
        epoch = ctx.epoch

        def deliver(result, error):
            self._enqueue(runtime, DeviceEvent(EventKind.PREDICTION, (result, error), epoch=epoch))

        ctx.in_flight = self.prediction.submit(vector, deliver)

    def _on_prediction(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        if event.epoch != ctx.epoch:
            logger.debug(f"Discarding prediction for {ctx.device_id} from an earlier state")
            return
        ctx.in_flight = None
        result, error = event.payload

        if error is not None:
            log_prediction_error(error, "prediction_result", device_id=ctx.device_id)
        else:
            ctx.device.last_prediction = result
            if result.fallback:
                self._audit(EventType.PREDICTION_FALLBACK,
                            f"Heuristic fallback for {ctx.device_id}",
                            {'probability': result.probability, 'model': result.model_version},
                            ctx.device_id)
            self._evaluate(ctx)

        pending, ctx.pending_vector = ctx.pending_vector, None
        if pending is not None and ctx.state.accepts_predictions:
            self._submit_prediction(ctx, pending)

    def _risk_threshold(self, ctx: DeviceContext) -> float:
        threshold = self.config.high_risk_threshold
        profile = ctx.device.profile
        if profile is not None and profile.has_action(ProfileAction.EAGER_PREEMPTIVE_RECONNECT):
            threshold -= self.config.eager_threshold_margin
        return threshold

    def _evaluate(self, ctx: DeviceContext) -> None:
        """Decide on a preemptive reconnect from the latest prediction."""
        if ctx.state != S.CONNECTED:
            return
        result = ctx.device.last_prediction
        now = self._clock()
        if result is None or result.is_stale(now, self.config.prediction_horizon):
            return
        threshold = self._risk_threshold(ctx)
        if result.probability <= threshold or result.confidence <= self.config.min_confidence:
            return

        last = ctx.device.last_preemptive_at
        if last is not None and now - last < self.config.preemptive_cooldown:
            logger.debug(f"Preemptive reconnect for {ctx.device_id} suppressed by cooldown")
            return

        reason = f"p={result.probability:.2f} c={result.confidence:.2f} threshold={threshold:.2f}"
        logger.info(f"Preemptive reconnect for {ctx.device_id}: {reason}")
        ctx.device.last_preemptive_at = now
        self._radio_call('prepare_standby', ctx.device_id)
        self._close_session(ctx, SessionEndReason.PREEMPTIVE)
        self._transition(ctx, S.PREEMPTIVE_RECONNECT, Trigger.PREDICTION, reason)
        self._enqueue(self._runtime(ctx.device_id),
                      DeviceEvent(EventKind.RECONNECT_ATTEMPT, epoch=ctx.epoch))

    def _on_link_lost(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        if ctx.state == S.CONNECTED:
            self._close_session(ctx, SessionEndReason.LOST)
            self._transition(ctx, S.DISCONNECTED, Trigger.LINK_LOST)
            self._register_failure(ctx, "link_lost")
        elif ctx.state == S.PREEMPTIVE_RECONNECT:
            # Expected while switching links; not a failure
            self._transition(ctx, S.DISCONNECTED, Trigger.LINK_LOST)
            self._enqueue(self._runtime(ctx.device_id),
                          DeviceEvent(EventKind.RECONNECT_ATTEMPT, epoch=ctx.epoch))
        else:
            logger.debug(f"Link lost for {ctx.device_id} in {ctx.state.value}, ignored")

    def _on_connect_request(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        if ctx.state not in (S.TRUSTED_DISCONNECTED, S.DISCONNECTED):
            logger.debug(f"Connect request for {ctx.device_id} in {ctx.state.value}, ignored")
            return
        self._runtime(ctx.device_id).timers.cancel(TIMER_RECONNECT)
        self._attempt_connect(ctx, Trigger.CONNECT_REQUEST)

    def _on_reconnect_attempt(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        if event.epoch != ctx.epoch or ctx.state not in RECONNECTABLE_STATES:
            return
        self._attempt_connect(ctx, Trigger.RECONNECT)

    def _attempt_connect(self, ctx: DeviceContext, trigger: Trigger) -> None:
        if not self.trust_store.is_paired(ctx.device_id):
            logger.warning(f"Not connecting {ctx.device_id}: no live trust record")
            return
        if self.radio is None:
            # Not counted as a failure
            logger.warning(f"Not connecting {ctx.device_id}: no radio driver attached")
            return
        try:
            self.radio.connect(ctx.device_id)
        except RadioError as e:
            log_radio_error(e, "connect", device_id=ctx.device_id)
            self._register_failure(ctx, f"connect_failed:{e.reason}")
            return

        if self._transition(ctx, S.CONNECTED, trigger):
            self._open_session(ctx)

    def _register_failure(self, ctx: DeviceContext, reason: str) -> None:
        """Count a failure and either schedule the next attempt or block."""
        ctx.device.failure_count += 1
        count = ctx.device.failure_count
        if count > self.config.max_reconnect_retries:
            logger.warning(f"{ctx.device_id} exceeded {self.config.max_reconnect_retries} "
                           f"reconnect retries ({reason}), blocking")
            self._block(ctx, Trigger.RETRIES_EXHAUSTED, 'retries_exhausted')
            return

        if ctx.state != S.DISCONNECTED:
            self._transition(ctx, S.DISCONNECTED, Trigger.RECONNECT_FAILED, reason)
        self._persist(ctx)

        delay = backoff_delay(count, self.config.backoff_base, self.config.backoff_cap)
        runtime = self._runtime(ctx.device_id)
        epoch = ctx.epoch
        runtime.timers.schedule(
            TIMER_RECONNECT, delay,
            lambda: self._enqueue(runtime, DeviceEvent(EventKind.RECONNECT_ATTEMPT, epoch=epoch)),
        )
        logger.info(f"Reconnect {ctx.device_id} in {delay:.2f}s (failure {count}, {reason})")

    def _block(self, ctx: DeviceContext, trigger: Trigger, reason: str) -> None:
        self._runtime(ctx.device_id).timers.cancel_all()
        self._close_session(ctx, SessionEndReason.REVOKED)
        was_linked = ctx.state in (S.CONNECTED, S.PREEMPTIVE_RECONNECT)
        self._transition(ctx, S.BLOCKED, trigger, reason)
        if was_linked:
            self._radio_call('disconnect', ctx.device_id)
        self._revoke_trust(ctx.device_id, reason)

    def _revoke_trust(self, device_id: str, reason: str) -> None:
        try:
            self.trust_store.revoke(device_id, reason)
        except TrustPersistenceError as e:
            # Revocation stands in memory
            log_trust_error(e, "revoke", device_id=device_id)

    def _on_revoked(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        if self.trust_store.is_paired(ctx.device_id):
            logger.debug(f"Revocation of {ctx.device_id} superseded by a newer pairing, ignored")
            return
        self._apply_revocation(ctx, event.payload or "")

    def _apply_revocation(self, ctx: DeviceContext, reason: str, cancel_exchange: bool = True) -> None:
        self._runtime(ctx.device_id).timers.cancel_all()
        if ctx.state == S.BLOCKED:
            return
        was_linked = ctx.state in (S.CONNECTED, S.PREEMPTIVE_RECONNECT)
        self._close_session(ctx, SessionEndReason.REVOKED)
        if cancel_exchange:
            self.trust_store.cancel_exchange(ctx.device_id)
        self._transition(ctx, S.BLOCKED, Trigger.REVOKED, reason)
        if was_linked:
            self._radio_call('disconnect', ctx.device_id)

    def _on_user_disconnect(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        if ctx.state not in (S.CONNECTED, S.PREEMPTIVE_RECONNECT, S.DISCONNECTED):
            return
        self._runtime(ctx.device_id).timers.cancel(TIMER_RECONNECT)
        self._close_session(ctx, SessionEndReason.USER)
        self._radio_call('disconnect', ctx.device_id)
        self._transition(ctx, S.TRUSTED_DISCONNECTED, Trigger.USER_DISCONNECT)

    def _on_pairing_timeout(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        if ctx.state != S.PAIRING or event.epoch != ctx.epoch:
            return
        self.trust_store.cancel_exchange(ctx.device_id)
        self._audit(EventType.PAIRING_FAILED, f"Pairing timed out for {ctx.device_id}",
                    {'reason': 'timeout'}, ctx.device_id)
        self._transition(ctx, S.DISCOVERED, Trigger.PAIRING_TIMEOUT)

    def _on_profile_changed(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        ctx.device.profile = event.payload
        self._persist(ctx)
        self._evaluate(ctx)

    def _on_stability_check(self, ctx: DeviceContext, event: DeviceEvent) -> None:
        if event.epoch != ctx.epoch or ctx.state != S.CONNECTED:
            return
        if ctx.device.failure_count:
            logger.info(f"{ctx.device_id} stable for {self.config.stable_connection_period}s, "
                        f"clearing {ctx.device.failure_count} failures")
            ctx.device.failure_count = 0
            self._persist(ctx)

    _handlers = {
        EventKind.VECTOR: _on_vector,
        EventKind.PREDICTION: _on_prediction,
        EventKind.LINK_LOST: _on_link_lost,
        EventKind.CONNECT_REQUEST: _on_connect_request,
        EventKind.RECONNECT_ATTEMPT: _on_reconnect_attempt,
        EventKind.USER_DISCONNECT: _on_user_disconnect,
        EventKind.REVOKED: _on_revoked,
        EventKind.PAIRING_TIMEOUT: _on_pairing_timeout,
        EventKind.PROFILE_CHANGED: _on_profile_changed,
        EventKind.STABILITY_CHECK: _on_stability_check,
    }

    def _handle_fault(self, ctx: DeviceContext, error: Exception) -> None:
        """Contain an unexpected handler failure to this device."""
        try:
            ctx.cancel_prediction()
            state = ctx.state
            if state == S.BLOCKED:
                return
            if state.is_trusted:
                self._close_session(ctx, SessionEndReason.FAULT)
                if state in (S.CONNECTED, S.PREEMPTIVE_RECONNECT):
                    self._radio_call('disconnect', ctx.device_id)
                if state != S.DISCONNECTED:
                    self._transition(ctx, S.DISCONNECTED, Trigger.FAULT, type(error).__name__)
                self._register_failure(ctx, "fault")
            else:
                self.trust_store.cancel_exchange(ctx.device_id)
                if state != S.DISCOVERED:
                    self._transition(ctx, S.DISCOVERED, Trigger.FAULT, type(error).__name__)
        except Exception as e:
            handle_error(e, "handle_fault", ErrorCategory.INTERNAL,
                         severity=ErrorSeverity.CRITICAL, device_id=ctx.device_id)

    # =========================================================================
    # Transitions and sessions (caller holds ctx.lock)
    # =========================================================================

    def _transition(self, ctx: DeviceContext, new_state: ConnectionState,
                    trigger: Trigger, reason: str = "") -> bool:
        old_state = ctx.state
        if new_state == old_state:
            return False
        if not is_allowed(old_state, new_state):
            logger.warning(f"Illegal transition {old_state.value} -> {new_state.value} "
                           f"for {ctx.device_id} on {trigger.value}, ignored")
            return False

        ctx.device.state = new_state
        ctx.epoch += 1
        ctx.cancel_prediction()

        logger.info(f"{ctx.device_id}: {old_state.value} -> {new_state.value} "
                    f"({trigger.value}{': ' + reason if reason else ''})")
        self._persist(ctx)
        self._audit(EventType.STATE_TRANSITION,
                    f"{old_state.value} -> {new_state.value}",
                    {'old_state': old_state.value, 'new_state': new_state.value,
                     'trigger': trigger.value, 'reason': reason},
                    ctx.device_id)

        with self._callback_lock:
            callbacks = list(self._transition_callbacks.values())
        for callback in callbacks:
            try:
                callback(ctx.device_id, old_state, new_state, trigger, reason)
            except Exception as e:
                logger.error(f"Error in transition callback: {e}")
        return True

    def _open_session(self, ctx: DeviceContext) -> ConnectionSession:
        now = self._clock()
        session_id = ctx.device.last_session_id + 1
        session = ConnectionSession(device_id=ctx.device_id, session_id=session_id, started_at=now)
        ctx.device.last_session_id = session_id
        ctx.device.active_session = session
        ctx.connected_since = now
        self._persist(ctx)
        self._audit(EventType.SESSION_OPENED, f"Session {session_id} opened",
                    {'session_id': session_id}, ctx.device_id)

        runtime = self._runtime(ctx.device_id)
        epoch = ctx.epoch
        runtime.timers.schedule(
            TIMER_STABILITY, self.config.stable_connection_period,
            lambda: self._enqueue(runtime, DeviceEvent(EventKind.STABILITY_CHECK, epoch=epoch)),
        )
        return session

    def _close_session(self, ctx: DeviceContext, reason: SessionEndReason) -> None:
        session = ctx.device.active_session
        if session is None:
            return
        now = max(self._clock(), session.started_at)
        closed = session.close(now, reason)
        ctx.device.active_session = None
        ctx.connected_since = None
        ctx.device.sessions.append(closed)
        del ctx.device.sessions[:-self.config.session_history]
        runtime = self._runtime(ctx.device_id)
        if runtime is not None:
            runtime.timers.cancel(TIMER_STABILITY)
        self._audit(EventType.SESSION_CLOSED, f"Session {closed.session_id} closed ({reason.value})",
                    {'session_id': closed.session_id, 'reason': reason.value,
                     'duration': round(closed.duration(now), 3)},
                    ctx.device_id)

    # =========================================================================
    # Side effects
    # =========================================================================

    def _radio_call(self, operation: str, device_id: str) -> None:
        if self.radio is None:
            return
        try:
            getattr(self.radio, operation)(device_id)
        except RadioError as e:
            log_radio_error(e, operation, device_id=device_id)

    def _persist(self, ctx: DeviceContext) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.update(ctx.device)
        except OSError as e:
            log_storage_error(e, "persist_device", device_id=ctx.device_id)

    def _audit(self, event_type: EventType, details: str, metadata: Dict,
               device_id: Optional[str]) -> None:
        if self.event_logger is None:
            return
        try:
            self.event_logger.log_event(event_type, details, metadata, device_id=device_id)
        except OSError as e:
            log_storage_error(e, "audit_event", event_type=event_type.value)

    # =========================================================================
    # Callbacks and status
    # =========================================================================

    def register_transition_callback(self, callback: TransitionCallback) -> int:
        """
        Register callback for state transitions.

        Args:
            callback: Function accepting (device_id, old_state, new_state, trigger, reason)

        Returns:
            Callback ID that can be used to unregister the callback
        """
        with self._callback_lock:
            callback_id = self._next_callback_id
            self._next_callback_id += 1
            self._transition_callbacks[callback_id] = callback
            return callback_id

    def unregister_transition_callback(self, callback_id: int) -> bool:
        with self._callback_lock:
            if callback_id in self._transition_callbacks:
                del self._transition_callbacks[callback_id]
                return True
            return False

    def get_stats(self) -> Dict:
        with self._registry_lock:
            runtimes = list(self._devices.values())
        states: Dict[str, int] = {}
        queues = {}
        for runtime in runtimes:
            state = runtime.context.state.value
            states[state] = states.get(state, 0) + 1
            queues[runtime.context.device_id] = runtime.queue.snapshot().to_dict()
        return {
            'running': self._running,
            'devices': len(runtimes),
            'states': states,
            'queues': queues,
            'profile': self._profile.kind.value if self._profile else None,
        }
