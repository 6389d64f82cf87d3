"""
Profile Classifier - Maps context signals to a behavioral profile.

Rules are evaluated in precedence order and the first match wins:

1. network identity is a home network               -> HOME
2. network identity is an office network and the
   hour is inside office hours                      -> OFFICE
3. moved at least travel_distance metres            -> TRAVELING
4. otherwise                                        -> DEFAULT

A known network always outranks movement. The classifier is pure: the same
inputs and rules always give the same profile.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from .config import ProfileRules
from .models import Profile, ProfileAction, ProfileEvidence, ProfileKind

logger = logging.getLogger(__name__)


PROFILE_ACTIONS: Dict[ProfileKind, FrozenSet[ProfileAction]] = {
    ProfileKind.HOME: frozenset({ProfileAction.AUTO_ROUTE_AUDIO}),
    ProfileKind.OFFICE: frozenset({ProfileAction.SUPPRESS_AUDIO_NOTIFICATIONS}),
    ProfileKind.TRAVELING: frozenset({
        ProfileAction.EAGER_PREEMPTIVE_RECONNECT,
        ProfileAction.CONSERVE_BATTERY,
    }),
    ProfileKind.DEFAULT: frozenset(),
}


def hour_in_window(hour: int, window: Tuple[int, int]) -> bool:
    """Half-open [start, end) hour window; start > end wraps past midnight."""
    start, end = window
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


@dataclass(frozen=True)
class _Signals:
    network: Optional[str]
    hour: int
    location_delta: float
    ssid_match: Optional[str]
    in_office_hours: bool
    moving: bool


@dataclass(frozen=True)
class ProfileRule:
    """One entry of the precedence list."""
    name: str
    kind: ProfileKind
    matches: Callable[[_Signals], bool]


class ProfileClassifier:
    """Deterministic rule-based profile classification."""

    def __init__(self, rules: Optional[ProfileRules] = None):
        self.rules = rules or ProfileRules()
        self._home = frozenset(n.strip() for n in self.rules.home_networks)
        self._office = frozenset(n.strip() for n in self.rules.office_networks)
        self._office_hours = tuple(self.rules.office_hours)
        self._travel_distance = float(self.rules.travel_distance)

        self._precedence: List[ProfileRule] = [
            ProfileRule('home_network', ProfileKind.HOME,
                        lambda s: s.ssid_match == 'home'),
            ProfileRule('office_network_hours', ProfileKind.OFFICE,
                        lambda s: s.ssid_match == 'office' and s.in_office_hours),
            ProfileRule('movement', ProfileKind.TRAVELING,
                        lambda s: s.moving),
        ]

    def classify(self, network_identity: Optional[str], hour: int,
                 location_delta: float) -> Profile:
        """
        Classify the current context.

        Args:
            network_identity: Current network SSID, or None when offline
            hour: Local hour of day, 0-23
            location_delta: Distance moved in metres over the recent period

        Raises:
            ValueError: if hour is outside 0-23
        """
        if isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour <= 23:
            raise ValueError(f"hour must be an integer in 0-23, got {hour!r}")

        network = network_identity.strip() if network_identity else None
        try:
            delta = float(location_delta)
        except (TypeError, ValueError):
            delta = 0.0
        if not math.isfinite(delta) or delta < 0:
            delta = 0.0

        if network and network in self._home:
            ssid_match = 'home'
        elif network and network in self._office:
            ssid_match = 'office'
        else:
            ssid_match = None

        signals = _Signals(
            network=network,
            hour=hour,
            location_delta=delta,
            ssid_match=ssid_match,
            in_office_hours=hour_in_window(hour, self._office_hours),
            moving=delta >= self._travel_distance,
        )

        kind, rule_name = ProfileKind.DEFAULT, 'default'
        for rule in self._precedence:
            if rule.matches(signals):
                kind, rule_name = rule.kind, rule.name
                break

        evidence = ProfileEvidence(
            network_identity=network,
            ssid_match=ssid_match,
            hour=hour,
            time_window_match=signals.in_office_hours,
            location_delta=delta,
            moving=signals.moving,
            rule=rule_name,
        )
        return Profile(kind=kind, evidence=evidence, actions=PROFILE_ACTIONS[kind])
