"""
Capability Gate - Authorization check exposed to capability owners.

Callers (file transfer, audio routing, notification mirroring) must ask the
gate before exercising a capability for a device. Answers are computed
fresh on every call and are False whenever the device is BLOCKED or the
trust store denies.
"""

import logging
from typing import Optional, Union

from ..event_logger import EventLogger, EventType
from ..models import Capability, ConnectionState
from ..trust_store import TrustStore
from ..utils.error_handling import ErrorCategory, handle_error, log_storage_error

logger = logging.getLogger(__name__)


class CapabilityGate:
    """Trust-aware capability authorization."""

    def __init__(self, trust_store: TrustStore, orchestrator,
                 event_logger: Optional[EventLogger] = None):
        self.trust_store = trust_store
        self.orchestrator = orchestrator
        self.event_logger = event_logger

    def is_authorized(self, device_id: str, capability: Union[Capability, str]) -> bool:
        """Never raises; any failure denies."""
        try:
            name = capability.value if isinstance(capability, Capability) else str(capability)
            state = self.orchestrator.get_state(device_id)
            if state == ConnectionState.BLOCKED:
                allowed, reason = False, 'blocked'
            else:
                allowed = self.trust_store.authorize(device_id, name)
                reason = 'trust_denied'
        except Exception as e:
            handle_error(e, "is_authorized", ErrorCategory.TRUST, device_id=device_id)
            return False

        if not allowed:
            logger.info(f"Denied {name} for {device_id} ({reason})")
            self._audit_denial(device_id, name, reason)
        return allowed

    def _audit_denial(self, device_id: str, capability: str, reason: str) -> None:
        if self.event_logger is None:
            return
        try:
            self.event_logger.log_event(
                EventType.CAPABILITY_DENIED, f"Denied {capability} for {device_id}",
                {'capability': capability, 'reason': reason}, device_id=device_id,
            )
        except OSError as e:
            log_storage_error(e, "audit_capability_denied", device_id=device_id)
