"""Boundary between the BLE session and a Bluetooth stack.

An ``Adapter`` accepts fire-and-forget commands (scan, connect, discover,
subscribe ...) and reports every outcome asynchronously as one of the typed
events defined here, delivered to the sink installed with ``bind()``. The
session never waits on a command; it reacts to the events.

Implementations:
- ``BleakAdapter``: real hardware through bleak.
- ``SimulatedAdapter``: an in-process fake mallet for demos and tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence, Union


class AdapterState(str, Enum):
    UNKNOWN = "unknown"
    POWERED_ON = "powered on"
    POWERED_OFF = "powered off"
    UNAUTHORIZED = "unauthorized"
    UNSUPPORTED = "unsupported"

    @property
    def available(self) -> bool:
        return self in (AdapterState.UNKNOWN, AdapterState.POWERED_ON)


@dataclass(frozen=True)
class Peripheral:
    """A discovered BLE device.

    Attributes:
        identifier: Opaque identifier used for connecting (MAC address on
            Linux/Windows, CoreBluetooth UUID on macOS).
        name: Advertised name, None when the device does not advertise one.
        rssi: Signal strength at discovery time, when known.
    """

    identifier: str
    name: Optional[str] = None
    rssi: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.name or "Unknown"


@dataclass(frozen=True)
class AdapterStateChanged:
    state: AdapterState
    reason: Optional[str] = None


@dataclass(frozen=True)
class PeripheralDiscovered:
    peripheral: Peripheral
    advertisement: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Connected:
    peripheral_id: str


@dataclass(frozen=True)
class ConnectFailed:
    peripheral_id: str
    error: str


@dataclass(frozen=True)
class Disconnected:
    peripheral_id: str
    error: Optional[str] = None


@dataclass(frozen=True)
class ServicesDiscovered:
    peripheral_id: str
    service_ids: tuple[str, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class CharacteristicsDiscovered:
    peripheral_id: str
    service_id: str
    characteristic_ids: tuple[str, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class NotificationStateChanged:
    peripheral_id: str
    characteristic_id: str
    error: Optional[str] = None


@dataclass(frozen=True)
class ValueUpdated:
    peripheral_id: str
    characteristic_id: str
    payload: bytes = b""
    error: Optional[str] = None


SessionEvent = Union[
    AdapterStateChanged,
    PeripheralDiscovered,
    Connected,
    ConnectFailed,
    Disconnected,
    ServicesDiscovered,
    CharacteristicsDiscovered,
    NotificationStateChanged,
    ValueUpdated,
]

EventSink = Callable[[SessionEvent], None]


class Adapter(ABC):
    """Capability set the session drives.

    Commands must not block and must not raise for operational failures;
    failures come back as events. Commands are issued from the session's
    event-loop thread, and events must be delivered on that same thread.
    """

    def __init__(self) -> None:
        self._sink: Optional[EventSink] = None

    def bind(self, sink: EventSink) -> None:
        """Install the callable that receives every event from now on."""
        self._sink = sink

    def emit(self, event: SessionEvent) -> None:
        if self._sink is not None:
            self._sink(event)

    @abstractmethod
    def scan(self, service_ids: Optional[Sequence[str]] = None) -> None:
        """Start discovery, optionally restricted to advertised services."""

    @abstractmethod
    def stop_scan(self) -> None:
        """Halt discovery. Safe to call when not scanning."""

    @abstractmethod
    def connect(self, peripheral_id: str) -> None:
        """Open a connection; answered by ``Connected`` or ``ConnectFailed``."""

    @abstractmethod
    def disconnect(self, peripheral_id: str) -> None:
        """Close a connection; answered by ``Disconnected``."""

    @abstractmethod
    def discover_services(
        self, peripheral_id: str, service_ids: Optional[Sequence[str]] = None
    ) -> None:
        """Answered by ``ServicesDiscovered``."""

    @abstractmethod
    def discover_characteristics(
        self,
        peripheral_id: str,
        service_id: str,
        characteristic_ids: Optional[Sequence[str]] = None,
    ) -> None:
        """Answered by ``CharacteristicsDiscovered``."""

    @abstractmethod
    def subscribe(self, peripheral_id: str, characteristic_id: str) -> None:
        """Enable notifications.

        Answered by ``NotificationStateChanged``, then ``ValueUpdated`` for
        each notification.
        """

    @abstractmethod
    async def close(self) -> None:
        """Stop scanning, drop every connection and cancel pending work."""
