"""
Event Logger - Tamper-evident audit log of engine events.

Each line of the log is one JSON event carrying the SHA-256 hash of the
previous event, so any edit or deletion breaks the chain.
"""

import hashlib
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .constants import Permissions

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class EventType(Enum):
    """Types of engine events"""
    ENGINE_START = "engine_start"
    ENGINE_STOP = "engine_stop"
    DEVICE_DISCOVERED = "device_discovered"
    STATE_TRANSITION = "state_transition"
    SESSION_OPENED = "session_opened"
    SESSION_CLOSED = "session_closed"
    PAIRED = "paired"
    PAIRING_FAILED = "pairing_failed"
    REVOKED = "revoked"
    PROFILE_CHANGE = "profile_change"
    PREDICTION_FALLBACK = "prediction_fallback"
    TELEMETRY_DROPPED = "telemetry_dropped"
    CAPABILITY_DENIED = "capability_denied"


@dataclass
class EngineEvent:
    """A single event in the log"""
    event_id: str
    timestamp: str
    event_type: EventType
    details: str
    metadata: Dict
    hash_chain: str  # Hash of previous event
    device_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'event_id': self.event_id,
            'timestamp': self.timestamp,
            'event_type': self.event_type.value,
            'device_id': self.device_id,
            'details': self.details,
            'metadata': self.metadata,
            'hash_chain': self.hash_chain,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EngineEvent':
        return cls(
            event_id=data['event_id'],
            timestamp=data['timestamp'],
            event_type=EventType(data['event_type']),
            details=data['details'],
            metadata=data.get('metadata', {}),
            hash_chain=data['hash_chain'],
            device_id=data.get('device_id'),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    def compute_hash(self) -> str:
        """SHA-256 over everything except the chain link itself"""
        data = self.to_dict()
        del data['hash_chain']
        return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()


class EventLogger:
    """
    Append-only, hash-chained event log.

    Every event is fsync'd before log_event() returns.
    """

    def __init__(self, log_file_path: str):
        self.log_file_path = str(log_file_path)
        self._lock = threading.Lock()
        self._last_hash: str = GENESIS_HASH
        self._event_count = 0

        log_dir = os.path.dirname(self.log_file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        self._load_existing_log()

    def _read_lines(self) -> List[str]:
        if not os.path.exists(self.log_file_path):
            return []
        with open(self.log_file_path, 'r') as f:
            return [line.strip() for line in f if line.strip()]

    def _load_existing_log(self):
        """Resume the chain from the last event on disk"""
        try:
            lines = self._read_lines()
            if lines:
                event = EngineEvent.from_dict(json.loads(lines[-1]))
                self._last_hash = event.compute_hash()
                self._event_count = len(lines)
        except (OSError, ValueError, KeyError) as e:
            # A damaged tail starts a new chain segment; verify_chain() will flag it
            logger.warning(f"Error loading existing event log {self.log_file_path}: {e}")

    def log_event(self, event_type: EventType, details: str,
                  metadata: Optional[Dict] = None,
                  device_id: Optional[str] = None) -> EngineEvent:
        """
        Append an event.

        Raises:
            OSError: if the event could not be written durably
        """
        with self._lock:
            event = EngineEvent(
                event_id=str(uuid.uuid4()),
                timestamp=datetime.now(timezone.utc).isoformat(),
                event_type=event_type,
                details=details,
                metadata=metadata or {},
                hash_chain=self._last_hash,
                device_id=device_id,
            )
            self._append_to_log(event)
            self._last_hash = event.compute_hash()
            self._event_count += 1
            return event

    def _append_to_log(self, event: EngineEvent):
        try:
            fd = os.open(self.log_file_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND,
                         Permissions.SECURE_FILE)
            with os.fdopen(fd, 'a') as f:
                f.write(event.to_json() + '\n')
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.critical(f"Failed to write to event log: {e}")
            raise

    def get_event_count(self) -> int:
        with self._lock:
            return self._event_count

    def get_last_hash(self) -> str:
        with self._lock:
            return self._last_hash

    def verify_chain(self) -> Tuple[bool, Optional[str]]:
        """
        Verify the integrity of the entire event chain.

        Returns:
            (is_valid, error_message)
        """
        try:
            lines = self._read_lines()
        except OSError as e:
            return (False, f"Error reading event log: {e}")

        expected_hash = GENESIS_HASH
        for i, line in enumerate(lines):
            try:
                event = EngineEvent.from_dict(json.loads(line))
            except (ValueError, KeyError) as e:
                return (False, f"Malformed event {i}: {e}")
            if event.hash_chain != expected_hash:
                return (False, f"Hash chain broken at event {i}: expected {expected_hash}, "
                               f"got {event.hash_chain}")
            expected_hash = event.compute_hash()
        return (True, None)

    def _parse_all(self) -> List[EngineEvent]:
        events = []
        for line in self._read_lines():
            try:
                events.append(EngineEvent.from_dict(json.loads(line)))
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping malformed event log line: {e}")
        return events

    def get_recent_events(self, count: int = 100) -> List[EngineEvent]:
        """Most recent events, newest first."""
        events = self._parse_all()
        return list(reversed(events[-count:])) if count > 0 else []

    def get_events_by_type(self, event_type: EventType, limit: int = 100,
                           device_id: Optional[str] = None) -> List[EngineEvent]:
        """Events of one type (optionally for one device), newest first."""
        matches = []
        for event in reversed(self._parse_all()):
            if len(matches) >= limit:
                break
            if event.event_type != event_type:
                continue
            if device_id is not None and event.device_id != device_id:
                continue
            matches.append(event)
        return matches
