"""
Data Model - Devices, telemetry, predictions, profiles, trust and sessions.

Every record serializes with to_dict()/from_dict() and round-trips through
JSON without loss, which is what the persisted engine state relies on.
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum, IntFlag
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple


class ConnectionState(Enum):
    """Per-device connection state"""
    DISCOVERED = "discovered"                    # Seen by radio, not paired
    PAIRING = "pairing"                          # Token exchange in progress
    TRUSTED_DISCONNECTED = "trusted_disconnected"
    CONNECTED = "connected"
    PREEMPTIVE_RECONNECT = "preemptive_reconnect"
    DISCONNECTED = "disconnected"                # Link lost, reconnecting
    BLOCKED = "blocked"                          # Revoked or retries exhausted

    @property
    def is_trusted(self) -> bool:
        """States that imply a live trust record."""
        return self in (
            ConnectionState.TRUSTED_DISCONNECTED,
            ConnectionState.CONNECTED,
            ConnectionState.PREEMPTIVE_RECONNECT,
            ConnectionState.DISCONNECTED,
        )

    @property
    def accepts_predictions(self) -> bool:
        """States in which prediction results still apply."""
        return self in (ConnectionState.CONNECTED, ConnectionState.PREEMPTIVE_RECONNECT)


class Capability(Enum):
    """Trust-sensitive capabilities guarded by the capability gate"""
    FILE_TRANSFER = "file_transfer"
    AUDIO_ROUTING = "audio_routing"
    NOTIFICATION_MIRROR = "notification_mirror"


class ContextFlag(IntFlag):
    """Context flags attached to a telemetry sample"""
    NONE = 0
    WIFI_INTERFERENCE = 1
    SCREEN_ON = 2
    CHARGING = 4
    AUDIO_ACTIVE = 8
    TRANSFER_ACTIVE = 16

    @classmethod
    def from_names(cls, names: Iterable[str]) -> 'ContextFlag':
        """Build a flag set from names like 'wifi_interference'."""
        flags = cls.NONE
        for name in names:
            name = str(name).strip()
            if name:
                flags |= cls[name.upper()]
        return flags


class SessionEndReason(Enum):
    """Why a connection session was closed"""
    PREEMPTIVE = "preemptive"
    LOST = "lost"
    REVOKED = "revoked"
    USER = "user"
    FAULT = "fault"
    SHUTDOWN = "shutdown"


class ProfileKind(Enum):
    """Discrete behavioral context"""
    HOME = "home"
    OFFICE = "office"
    TRAVELING = "traveling"
    DEFAULT = "default"


class ProfileAction(Enum):
    """Policy actions a profile asks the orchestrator and collaborators to apply"""
    AUTO_ROUTE_AUDIO = "auto_route_audio"
    SUPPRESS_AUDIO_NOTIFICATIONS = "suppress_audio_notifications"
    EAGER_PREEMPTIVE_RECONNECT = "eager_preemptive_reconnect"
    CONSERVE_BATTERY = "conserve_battery"


def _finite(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


@dataclass(frozen=True)
class TelemetrySample:
    """Normalized radio reading for one device"""
    device_id: str
    timestamp: float                # epoch seconds
    signal_strength: float          # dBm
    battery_level: Optional[float] = None   # percent
    context_flags: ContextFlag = ContextFlag.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'timestamp': self.timestamp,
            'signal_strength': self.signal_strength,
            'battery_level': self.battery_level,
            'context_flags': int(self.context_flags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TelemetrySample':
        return cls(
            device_id=data['device_id'],
            timestamp=float(data['timestamp']),
            signal_strength=float(data['signal_strength']),
            battery_level=data.get('battery_level'),
            context_flags=ContextFlag(data.get('context_flags', 0)),
        )


@dataclass(frozen=True)
class FeatureVector:
    """Features derived from one evaluation of a device's window"""
    device_id: str
    window_timestamp: float
    sample_count: int
    signal_last: float
    signal_mean: float
    trend_slope: float              # dBm per second
    signal_variance: float
    residual_std: float             # spread around the linear trend
    battery_delta: float            # percent, first -> last sample
    hour_of_day: int
    context_bitmask: int
    signal_series: Tuple[float, ...] = ()

    NUMERIC_FIELDS = (
        'window_timestamp', 'signal_last', 'signal_mean', 'trend_slope',
        'signal_variance', 'residual_std', 'battery_delta',
    )

    def is_finite(self) -> bool:
        """Check that every numeric field is finite."""
        if not all(_finite(getattr(self, name)) for name in self.NUMERIC_FIELDS):
            return False
        return all(_finite(v) for v in self.signal_series)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'window_timestamp': self.window_timestamp,
            'sample_count': self.sample_count,
            'signal_last': self.signal_last,
            'signal_mean': self.signal_mean,
            'trend_slope': self.trend_slope,
            'signal_variance': self.signal_variance,
            'residual_std': self.residual_std,
            'battery_delta': self.battery_delta,
            'hour_of_day': self.hour_of_day,
            'context_bitmask': self.context_bitmask,
            'signal_series': list(self.signal_series),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeatureVector':
        fields = dict(data)
        fields['signal_series'] = tuple(data.get('signal_series', ()))
        return cls(**fields)


@dataclass(frozen=True)
class PredictionResult:
    """Disconnection forecast for one feature vector"""
    device_id: str
    probability: float
    confidence: float
    model_version: str
    timestamp: float
    fallback: bool = False

    def __post_init__(self):
        for name in ('probability', 'confidence'):
            value = getattr(self, name)
            if not _finite(value) or not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value!r}")

    def is_stale(self, now: float, horizon: float) -> bool:
        """Results older than the horizon must not drive decisions."""
        return (now - self.timestamp) > horizon

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'probability': self.probability,
            'confidence': self.confidence,
            'model_version': self.model_version,
            'timestamp': self.timestamp,
            'fallback': self.fallback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PredictionResult':
        return cls(
            device_id=data['device_id'],
            probability=float(data['probability']),
            confidence=float(data['confidence']),
            model_version=data['model_version'],
            timestamp=float(data['timestamp']),
            fallback=bool(data.get('fallback', False)),
        )


@dataclass(frozen=True)
class ProfileEvidence:
    """Signals that produced a profile decision"""
    network_identity: Optional[str]
    ssid_match: Optional[str]       # 'home', 'office' or None
    hour: int
    time_window_match: bool
    location_delta: float
    moving: bool
    rule: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'network_identity': self.network_identity,
            'ssid_match': self.ssid_match,
            'hour': self.hour,
            'time_window_match': self.time_window_match,
            'location_delta': self.location_delta,
            'moving': self.moving,
            'rule': self.rule,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProfileEvidence':
        return cls(**data)


@dataclass(frozen=True)
class Profile:
    """Current behavioral profile plus the evidence behind it"""
    kind: ProfileKind
    evidence: ProfileEvidence
    actions: FrozenSet[ProfileAction] = frozenset()

    def has_action(self, action: ProfileAction) -> bool:
        return action in self.actions

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'evidence': self.evidence.to_dict(),
            'actions': sorted(a.value for a in self.actions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Profile':
        return cls(
            kind=ProfileKind(data['kind']),
            evidence=ProfileEvidence.from_dict(data['evidence']),
            actions=frozenset(ProfileAction(a) for a in data.get('actions', [])),
        )


@dataclass(frozen=True)
class TrustRecord:
    """Pairing trust for one device"""
    device_id: str
    token: str
    capabilities: FrozenSet[str]
    created_at: float
    revoked: bool = False
    revoked_at: Optional[float] = None
    revoke_reason: str = ""

    def allows(self, capability: str) -> bool:
        return not self.revoked and capability in self.capabilities

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'token': self.token,
            'capabilities': sorted(self.capabilities),
            'created_at': self.created_at,
            'revoked': self.revoked,
            'revoked_at': self.revoked_at,
            'revoke_reason': self.revoke_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrustRecord':
        return cls(
            device_id=data['device_id'],
            token=data['token'],
            capabilities=frozenset(data.get('capabilities', [])),
            created_at=float(data['created_at']),
            revoked=bool(data.get('revoked', False)),
            revoked_at=data.get('revoked_at'),
            revoke_reason=data.get('revoke_reason', ""),
        )


@dataclass(frozen=True)
class ConnectionSession:
    """One continuous connected period of a device"""
    device_id: str
    session_id: int
    started_at: float
    ended_at: Optional[float] = None
    end_reason: Optional[SessionEndReason] = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def duration(self, now: float) -> float:
        end = self.ended_at if self.ended_at is not None else now
        return max(0.0, end - self.started_at)

    def close(self, ended_at: float, reason: SessionEndReason) -> 'ConnectionSession':
        """Return the closed copy of this session."""
        if not self.is_open:
            raise ValueError(f"Session {self.device_id}#{self.session_id} already closed")
        return replace(self, ended_at=ended_at, end_reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'session_id': self.session_id,
            'started_at': self.started_at,
            'ended_at': self.ended_at,
            'end_reason': self.end_reason.value if self.end_reason else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectionSession':
        reason = data.get('end_reason')
        return cls(
            device_id=data['device_id'],
            session_id=int(data['session_id']),
            started_at=float(data['started_at']),
            ended_at=data.get('ended_at'),
            end_reason=SessionEndReason(reason) if reason else None,
        )


@dataclass
class Device:
    """A radio peer tracked by the orchestrator"""
    device_id: str
    display_name: str = ""
    last_seen: Optional[float] = None
    state: ConnectionState = ConnectionState.DISCOVERED
    profile: Optional[Profile] = None
    last_session_id: int = 0
    failure_count: int = 0
    active_session: Optional[ConnectionSession] = None
    sessions: List[ConnectionSession] = field(default_factory=list)
    last_prediction: Optional[PredictionResult] = None
    last_preemptive_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'display_name': self.display_name,
            'last_seen': self.last_seen,
            'state': self.state.value,
            'profile': self.profile.to_dict() if self.profile else None,
            'last_session_id': self.last_session_id,
            'failure_count': self.failure_count,
            'active_session': self.active_session.to_dict() if self.active_session else None,
            'sessions': [s.to_dict() for s in self.sessions],
            'last_prediction': self.last_prediction.to_dict() if self.last_prediction else None,
            'last_preemptive_at': self.last_preemptive_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Device':
        profile = data.get('profile')
        active = data.get('active_session')
        prediction = data.get('last_prediction')
        return cls(
            device_id=data['device_id'],
            display_name=data.get('display_name', ""),
            last_seen=data.get('last_seen'),
            state=ConnectionState(data.get('state', ConnectionState.DISCOVERED.value)),
            profile=Profile.from_dict(profile) if profile else None,
            last_session_id=int(data.get('last_session_id', 0)),
            failure_count=int(data.get('failure_count', 0)),
            active_session=ConnectionSession.from_dict(active) if active else None,
            sessions=[ConnectionSession.from_dict(s) for s in data.get('sessions', [])],
            last_prediction=PredictionResult.from_dict(prediction) if prediction else None,
            last_preemptive_at=data.get('last_preemptive_at'),
        )


__all__ = [
    'ConnectionState',
    'Capability',
    'ContextFlag',
    'SessionEndReason',
    'ProfileKind',
    'ProfileAction',
    'TelemetrySample',
    'FeatureVector',
    'PredictionResult',
    'ProfileEvidence',
    'Profile',
    'TrustRecord',
    'ConnectionSession',
    'Device',
]
