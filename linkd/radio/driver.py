"""
Radio Driver Interface - Contract between the engine and the radio stack.

The engine never speaks a transport protocol itself. A driver connects and
disconnects devices on request and reports readings and link losses to an
attached listener from whatever thread it owns.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from ..models import ContextFlag

logger = logging.getLogger(__name__)


@dataclass
class RadioReading:
    """Raw reading as reported by a radio driver (not yet normalized)."""
    rssi: float
    timestamp: Optional[Union[float, datetime]] = None
    battery: Optional[float] = None
    flags: Union[ContextFlag, int, Iterable[str], None] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class RadioListener(ABC):
    """Callbacks a driver delivers to the engine."""

    @abstractmethod
    def on_signal_sample(self, device_id: str, reading: Union[RadioReading, Dict[str, Any]]) -> None:
        pass

    @abstractmethod
    def on_link_lost(self, device_id: str) -> None:
        pass

    def on_device_discovered(self, device_id: str, display_name: str = "") -> None:
        """Optional: a new peer became visible."""


class RadioDriver(ABC):
    """
    Abstract radio driver.

    connect() must either establish the link or raise RadioError; it may
    block for as long as the radio needs. disconnect() never raises for an
    already-disconnected device.
    """

    def __init__(self):
        self._listener: Optional[RadioListener] = None

    def attach(self, listener: RadioListener) -> None:
        self._listener = listener

    def detach(self) -> None:
        self._listener = None

    @property
    def listener(self) -> Optional[RadioListener]:
        return self._listener

    @abstractmethod
    def connect(self, device_id: str) -> None:
        """Establish a link; raises RadioError on failure."""

    @abstractmethod
    def disconnect(self, device_id: str) -> None:
        """Tear down a link."""

    def prepare_standby(self, device_id: str) -> None:
        """Warm a standby link ahead of a preemptive reconnect."""
        logger.debug(f"prepare_standby not supported by {type(self).__name__} for {device_id}")
