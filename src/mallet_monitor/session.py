"""BLE session: discovery, connection lifecycle and notification decoding.

``BleSession`` owns the whole conversation with one mallet:

1. ``start_scanning()`` asks the adapter for discovery.
2. Discovered peripherals are either auto-connected by exact name match
   (``DiscoveryPolicy.AUTO_CONNECT``) or collected, deduplicated by
   identifier, into a candidate list the user picks from with ``select()``
   (``DiscoveryPolicy.MANUAL_SELECT``).
3. Once connected, the session discovers the mallet service, its four
   channel characteristics, and subscribes to each of them.
4. Every notification is decoded as a little-endian float and pushed into the
   matching channel of the ``TelemetryBuffer``.

All adapter events go through ``handle_event()``, a single transition
function. ``run()`` feeds it from an asyncio queue so events, reconnect
timers and public operations all execute on the session's loop thread and
never interleave.

Unexpected disconnects are retried with bounded exponential backoff
(``ReconnectPolicy``). When the attempts are used up the session parks in
``ConnectionState.GAVE_UP`` until the user connects again.

Other threads observe the session only through ``status``, an immutable
``SessionStatus`` snapshot republished after every transition.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from .adapter import (
    Adapter,
    AdapterState,
    AdapterStateChanged,
    CharacteristicsDiscovered,
    ConnectFailed,
    Connected,
    Disconnected,
    NotificationStateChanged,
    Peripheral,
    PeripheralDiscovered,
    ServicesDiscovered,
    SessionEvent,
    ValueUpdated,
)
from .errors import (
    AdapterUnavailableError,
    CharacteristicReadError,
    ConnectionFailedError,
    DecodeError,
    DisconnectedUnexpectedlyError,
    DiscoveryError,
    MalletMonitorError,
    ReconnectExhaustedError,
    SessionClosedError,
    SubscriptionError,
    UnknownPeripheralError,
)
from .gatt import (
    CHARACTERISTIC_UUIDS,
    DEVICE_NAME,
    SERVICE_UUID,
    channel_for,
    decode_sample,
    normalize_uuid,
)
from .telemetry import Channel, Sample, TelemetryBuffer

logger = logging.getLogger(__name__)

ACTIVITY_LOG_SIZE = 100


class ConnectionState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    GAVE_UP = "gave up"


class DiscoveryPolicy(str, Enum):
    AUTO_CONNECT = "auto"
    MANUAL_SELECT = "manual"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded exponential backoff for unexpected disconnects.

    Attempt ``n`` (1-based) waits ``base_delay * multiplier ** (n - 1)``
    seconds, capped at ``max_delay``. ``max_attempts=0`` disables reconnecting.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 1.5
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))


class Cancellable(Protocol):
    def cancel(self) -> Any: ...


Scheduler = Callable[[float, Callable[[], None]], Cancellable]
ErrorListener = Callable[[MalletMonitorError], None]
SampleListener = Callable[[Channel, Sample], None]


@dataclass(frozen=True)
class SessionStatus:
    """Read-only projection of the session for the UI and other threads."""

    adapter_state: AdapterState = AdapterState.UNKNOWN
    connection_state: ConnectionState = ConnectionState.IDLE
    scanning: bool = False
    peripheral: Optional[Peripheral] = None
    candidates: tuple[Peripheral, ...] = ()
    reconnect_attempt: int = 0
    last_error: Optional[str] = None
    activity: tuple[str, ...] = ()

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED


def _loop_scheduler(delay: float, callback: Callable[[], None]) -> Cancellable:
    return asyncio.get_running_loop().call_later(delay, callback)


class BleSession:
    """State machine for one mallet connection.

    Args:
        adapter: Bluetooth stack to drive. The session binds itself as the
            adapter's event sink.
        buffer: Telemetry window that decoded samples are pushed into.
        policy: How discovered peripherals turn into a connection.
        device_name: Exact advertised name the auto-connect policy matches.
        reconnect_policy: Backoff used after unexpected disconnects.
        scheduler: ``scheduler(delay, callback)`` returning a handle with
            ``cancel()``. Defaults to the running loop's ``call_later``.
    """

    def __init__(
        self,
        adapter: Adapter,
        buffer: TelemetryBuffer,
        *,
        policy: DiscoveryPolicy = DiscoveryPolicy.AUTO_CONNECT,
        device_name: str = DEVICE_NAME,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._adapter = adapter
        self._buffer = buffer
        self._policy = policy
        self._device_name = device_name
        self._reconnect_policy = reconnect_policy or ReconnectPolicy()
        self._scheduler: Scheduler = scheduler or _loop_scheduler

        self._adapter_state = AdapterState.UNKNOWN
        self._connection_state = ConnectionState.IDLE
        self._scanning = False
        self._candidates: OrderedDict[str, Peripheral] = OrderedDict()
        self._target: Optional[Peripheral] = None
        self._connected: Optional[Peripheral] = None
        # Identifier of a connect issued to the adapter and not yet answered
        self._pending_connect: Optional[str] = None
        self._expected_disconnects: set[str] = set()
        self._reconnect_attempt = 0
        self._reconnect_handle: Optional[Cancellable] = None
        self._last_error: Optional[str] = None
        self._activity: deque[str] = deque(maxlen=ACTIVITY_LOG_SIZE)
        self._closed = False

        self._error_listeners: list[ErrorListener] = []
        self._sample_listeners: list[SampleListener] = []
        self._queue: asyncio.Queue[Optional[SessionEvent]] = asyncio.Queue()

        self._handlers: dict[type, Callable[[Any], None]] = {
            AdapterStateChanged: self._on_adapter_state,
            PeripheralDiscovered: self._on_discovered,
            Connected: self._on_connected,
            ConnectFailed: self._on_connect_failed,
            Disconnected: self._on_disconnected,
            ServicesDiscovered: self._on_services,
            CharacteristicsDiscovered: self._on_characteristics,
            NotificationStateChanged: self._on_notification_state,
            ValueUpdated: self._on_value,
        }

        self._status = SessionStatus()
        adapter.bind(self.post)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def policy(self) -> DiscoveryPolicy:
        return self._policy

    @property
    def closed(self) -> bool:
        return self._closed

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def add_sample_listener(self, listener: SampleListener) -> None:
        self._sample_listeners.append(listener)

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def post(self, event: SessionEvent) -> None:
        """Queue an adapter event for ``run()``. Must be called on the loop thread."""
        self._queue.put_nowait(event)

    async def run(self) -> None:
        """Process queued events until ``shutdown()`` is called."""
        logger.info("BLE session event loop started (policy=%s)", self._policy.value)
        while not self._closed:
            event = await self._queue.get()
            if event is None:
                break
            self.handle_event(event)
        logger.info("BLE session event loop finished")

    def handle_event(self, event: SessionEvent) -> None:
        """Apply one adapter event to the state machine."""
        if self._closed:
            logger.debug("Ignoring %s after shutdown", type(event).__name__)
            return
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("Unhandled adapter event: %r", event)
            return
        handler(event)
        self._publish()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start_scanning(self) -> None:
        """Clear the candidate list and start discovery with no service filter.

        Raises:
            SessionClosedError: The session has been shut down.
            AdapterUnavailableError: The adapter reported it has no usable
                Bluetooth hardware.
        """
        self._ensure_open()
        if self._adapter_state is AdapterState.UNSUPPORTED:
            error = AdapterUnavailableError(self._adapter_state)
            self._report(error)
            self._publish()
            raise error

        if not self._adapter_state.available:
            # The scan request doubles as the adapter's power probe; a
            # successful start reports POWERED_ON again.
            logger.warning(
                "Adapter last reported %s, retrying scan", self._adapter_state.value
            )

        # A user-initiated scan supersedes any pending reconnect
        self._cancel_reconnect()
        if self._connection_state is ConnectionState.RECONNECTING:
            self._reconnect_attempt = 0
        self._candidates.clear()
        self._scanning = True
        if self._connection_state is not ConnectionState.CONNECTED:
            self._connection_state = ConnectionState.SCANNING
        self._note("Starting Bluetooth scan...")
        self._adapter.scan()
        self._publish()

    def stop_scanning(self) -> None:
        """Halt discovery. No-op when not scanning or after shutdown."""
        if self._closed or not self._scanning:
            return
        self._stop_scan()
        self._publish()

    def select(self, peripheral_id: str) -> None:
        """Connect to a peripheral from the candidate list.

        Raises:
            SessionClosedError: The session has been shut down.
            UnknownPeripheralError: ``peripheral_id`` was never discovered
                during the current scan.
        """
        self._ensure_open()
        peripheral = self._candidates.get(peripheral_id)
        if peripheral is None:
            raise UnknownPeripheralError(f"No discovered peripheral {peripheral_id!r}")
        self._begin_connect(peripheral)
        self._publish()

    def connect(self, peripheral_id: str) -> None:
        """Connect to a peripheral by identifier, discovered or not.

        Raises:
            SessionClosedError: The session has been shut down.
        """
        self._ensure_open()
        peripheral = self._candidates.get(peripheral_id) or Peripheral(peripheral_id)
        self._begin_connect(peripheral)
        self._publish()

    def shutdown(self) -> None:
        """Release every resource the session holds.

        Stops scanning, cancels a pending reconnect, disconnects the current
        peripheral and stops ``run()``. Events that arrive afterwards are
        ignored. Idempotent.
        """
        if self._closed:
            return
        if self._scanning:
            self._stop_scan()
        self._cancel_reconnect()
        links = [self._connected.identifier] if self._connected is not None else []
        if self._pending_connect is not None and self._pending_connect not in links:
            links.append(self._pending_connect)
        for identifier in links:
            self._release(identifier)
        self._pending_connect = None
        self._connected = None
        self._target = None
        self._connection_state = ConnectionState.IDLE
        self._note("Session closed")
        self._closed = True
        self._publish()
        self._queue.put_nowait(None)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_adapter_state(self, event: AdapterStateChanged) -> None:
        previous = self._adapter_state
        self._adapter_state = event.state
        if event.state is AdapterState.POWERED_ON:
            if previous is not event.state:
                self._note("Bluetooth is powered on.")
            return
        if event.state is AdapterState.UNKNOWN:
            if previous is not event.state:
                self._note("Bluetooth is in an unknown state.")
            return

        # Unavailable states are handled even when repeated: a failed probe
        # scan re-reports the last state and still has to end the scan.
        self._note(f"Bluetooth is {event.state.value}.")
        self._scanning = False
        self._cancel_reconnect()
        self._pending_connect = None
        self._connected = None
        if self._connection_state is not ConnectionState.IDLE:
            self._connection_state = ConnectionState.DISCONNECTED
        self._report(AdapterUnavailableError(event.state, event.reason))

    def _on_discovered(self, event: PeripheralDiscovered) -> None:
        peripheral = event.peripheral
        if not self._scanning or not self._adapter_state.available:
            logger.debug("Late discovery ignored: %s", peripheral.identifier)
            return
        logger.debug(
            "Discovered peripheral: %s (%s) rssi=%s",
            peripheral.display_name,
            peripheral.identifier,
            peripheral.rssi,
        )

        if self._policy is DiscoveryPolicy.AUTO_CONNECT:
            if peripheral.name != self._device_name:
                return
            self._candidates[peripheral.identifier] = peripheral
            self._note(f"Found {peripheral.display_name} ({peripheral.identifier})")
            self._begin_connect(peripheral)
            return

        known = self._candidates.get(peripheral.identifier)
        if known is None:
            self._candidates[peripheral.identifier] = peripheral
            self._note(f"Discovered {peripheral.display_name} ({peripheral.identifier})")
        elif peripheral.name and peripheral.name != known.name:
            # Name arrived in a later scan response; keep position, refresh entry
            self._candidates[peripheral.identifier] = peripheral

    def _on_connected(self, event: Connected) -> None:
        if event.peripheral_id == self._pending_connect:
            self._pending_connect = None
        target = self._target
        if target is None or event.peripheral_id != target.identifier:
            # A connect that was superseded before it completed
            logger.warning("Connection from unexpected peripheral %s", event.peripheral_id)
            self._release(event.peripheral_id)
            return
        self._connected = target
        self._connection_state = ConnectionState.CONNECTED
        self._reconnect_attempt = 0
        self._note(f"Successfully connected to {target.display_name}")
        self._adapter.discover_services(target.identifier, [SERVICE_UUID])

    def _on_connect_failed(self, event: ConnectFailed) -> None:
        if event.peripheral_id == self._pending_connect:
            self._pending_connect = None
        target = self._target
        if target is None or event.peripheral_id != target.identifier:
            return
        self._note(f"Failed to connect to {target.display_name}: {event.error}")
        if self._reconnect_attempt > 0:
            self._schedule_reconnect()
            return
        self._connection_state = ConnectionState.DISCONNECTED
        self._report(
            ConnectionFailedError(
                f"Failed to connect to {target.display_name}: {event.error}"
            )
        )

    def _on_disconnected(self, event: Disconnected) -> None:
        peripheral_id = event.peripheral_id
        if peripheral_id in self._expected_disconnects:
            self._expected_disconnects.discard(peripheral_id)
            logger.info("Disconnected from %s as requested", peripheral_id)
            return
        target = self._target
        if target is None or peripheral_id != target.identifier:
            return

        self._connected = None
        self._note(f"Disconnected from {target.display_name}")
        if not self._adapter_state.available:
            self._connection_state = ConnectionState.DISCONNECTED
            return
        if event.error:
            self._report(
                DisconnectedUnexpectedlyError(
                    f"{target.display_name} disconnected: {event.error}"
                )
            )
        self._schedule_reconnect()

    def _on_services(self, event: ServicesDiscovered) -> None:
        if not self._is_current(event.peripheral_id):
            return
        if event.error:
            self._report(DiscoveryError(f"Error discovering services: {event.error}"))
            return
        wanted = normalize_uuid(SERVICE_UUID)
        services = [s for s in event.service_ids if normalize_uuid(s) == wanted]
        if not services:
            self._report(DiscoveryError(f"Service {SERVICE_UUID} not found"))
            return
        for service_id in services:
            self._note(f"Discovered service: {service_id}")
            self._adapter.discover_characteristics(
                event.peripheral_id, service_id, CHARACTERISTIC_UUIDS
            )

    def _on_characteristics(self, event: CharacteristicsDiscovered) -> None:
        if not self._is_current(event.peripheral_id):
            return
        if event.error:
            self._report(
                DiscoveryError(f"Error discovering characteristics: {event.error}")
            )
            return
        for characteristic_id in event.characteristic_ids:
            channel = channel_for(characteristic_id)
            if channel is None:
                logger.debug("Ignoring characteristic %s", characteristic_id)
                continue
            logger.info("Subscribing to %s (%s)", characteristic_id, channel.label)
            self._adapter.subscribe(event.peripheral_id, characteristic_id)

    def _on_notification_state(self, event: NotificationStateChanged) -> None:
        if not self._is_current(event.peripheral_id):
            return
        channel = channel_for(event.characteristic_id)
        label = channel.label if channel else event.characteristic_id
        if event.error:
            self._report(
                SubscriptionError(f"Could not subscribe to {label}: {event.error}")
            )
            return
        self._note(f"Receiving {label}")

    def _on_value(self, event: ValueUpdated) -> None:
        if not self._is_current(event.peripheral_id):
            return
        if event.error:
            self._report(
                CharacteristicReadError(f"Error reading characteristic: {event.error}")
            )
            return
        channel = channel_for(event.characteristic_id)
        if channel is None:
            logger.debug("Value from unknown characteristic %s", event.characteristic_id)
            return
        try:
            value = decode_sample(event.payload)
        except DecodeError as e:
            self._report(DecodeError(f"{channel.label}: {e}"))
            return

        sample = self._buffer.push(channel, value)
        logger.debug("Received %s: %s", channel.label, value)
        for listener in list(self._sample_listeners):
            try:
                listener(channel, sample)
            except Exception:
                logger.exception("Sample listener failed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError("BLE session has been shut down")

    def _is_current(self, peripheral_id: str) -> bool:
        return self._connected is not None and self._connected.identifier == peripheral_id

    def _stop_scan(self) -> None:
        self._scanning = False
        if self._connection_state is ConnectionState.SCANNING:
            self._connection_state = ConnectionState.IDLE
        self._note("Stopping Bluetooth scan...")
        self._adapter.stop_scan()

    def _begin_connect(self, peripheral: Peripheral) -> None:
        if self._scanning:
            self._stop_scan()
        self._cancel_reconnect()
        self._reconnect_attempt = 0

        current = self._connected
        if current is not None and current.identifier != peripheral.identifier:
            self._release(current.identifier)
            self._connected = None
        elif current is not None:
            logger.info("Already connected to %s", peripheral.identifier)
            return

        pending = self._pending_connect
        if pending is not None and pending != peripheral.identifier:
            self._release(pending)
            self._pending_connect = None

        self._target = peripheral
        self._connection_state = ConnectionState.CONNECTING
        self._note(f"Connecting to {peripheral.display_name}...")
        self._issue_connect(peripheral.identifier)

    def _issue_connect(self, peripheral_id: str) -> None:
        self._pending_connect = peripheral_id
        self._adapter.connect(peripheral_id)

    def _release(self, peripheral_id: str) -> None:
        """Disconnect, or abort a pending connect, without triggering a reconnect."""
        self._expected_disconnects.add(peripheral_id)
        self._adapter.disconnect(peripheral_id)

    def _schedule_reconnect(self) -> None:
        attempt = self._reconnect_attempt + 1
        policy = self._reconnect_policy
        if attempt > policy.max_attempts:
            self._connection_state = ConnectionState.GAVE_UP
            self._report(
                ReconnectExhaustedError(
                    f"Gave up after {policy.max_attempts} reconnect attempt(s)"
                )
            )
            return
        self._reconnect_attempt = attempt
        delay = policy.delay_for(attempt)
        self._connection_state = ConnectionState.RECONNECTING
        self._note(
            f"Reconnecting in {delay:.1f}s (attempt {attempt}/{policy.max_attempts})"
        )
        self._reconnect_handle = self._scheduler(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._closed or self._target is None:
            return
        self._connection_state = ConnectionState.CONNECTING
        logger.info(
            "Reconnect attempt %d to %s", self._reconnect_attempt, self._target.identifier
        )
        self._issue_connect(self._target.identifier)
        self._publish()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _note(self, message: str) -> None:
        logger.info(message)
        self._activity.append(message)

    def _report(self, error: MalletMonitorError) -> None:
        self._last_error = str(error)
        logger.warning("%s: %s", type(error).__name__, error)
        self._activity.append(f"Error: {error}")
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Error listener failed")

    def _publish(self) -> None:
        self._status = SessionStatus(
            adapter_state=self._adapter_state,
            connection_state=self._connection_state,
            scanning=self._scanning,
            peripheral=self._connected or self._target,
            candidates=tuple(self._candidates.values()),
            reconnect_attempt=self._reconnect_attempt,
            last_error=self._last_error,
            activity=tuple(self._activity),
        )
