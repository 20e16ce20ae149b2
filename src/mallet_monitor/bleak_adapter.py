"""``Adapter`` implementation over bleak.

bleak exposes coroutine APIs while the session issues fire-and-forget
commands, so every command that needs I/O is spawned as a task on the running
loop and reports its outcome as an event. bleak delivers its own callbacks
(detection, notifications, disconnects) on the loop thread as well, so every
event reaches the session on the thread that owns it.

Scanner start/stop is serialized with a lock: a ``stop_scan`` issued right
after ``scan`` waits for the scanner to actually start before stopping it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Optional, Sequence

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

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
    ValueUpdated,
)
from .gatt import normalize_uuid

logger = logging.getLogger(__name__)

_CONNECT_ERRORS = (BleakError, asyncio.TimeoutError, OSError)

_UNAUTHORIZED_HINTS = ("unauthorized", "not authorized", "denied", "permission")
_UNSUPPORTED_HINTS = ("no bluetooth adapters", "not found", "unsupported", "not available")


def classify_adapter_error(error: BaseException) -> AdapterState:
    """Guess the adapter state from a scanner start failure.

    bleak reports a missing, disabled or forbidden adapter with backend
    specific messages, so the classification is by message content.
    """
    message = str(error).lower()
    if any(word in message for word in _UNAUTHORIZED_HINTS):
        return AdapterState.UNAUTHORIZED
    if any(word in message for word in _UNSUPPORTED_HINTS):
        return AdapterState.UNSUPPORTED
    return AdapterState.POWERED_OFF


class BleakAdapter(Adapter):
    """Drive a local Bluetooth adapter through bleak.

    Args:
        connect_timeout: Seconds ``BleakClient.connect()`` may take before the
            attempt is reported as ``ConnectFailed``.
    """

    def __init__(self, connect_timeout: float = 20.0) -> None:
        super().__init__()
        self._connect_timeout = connect_timeout
        self._scanner: Optional[BleakScanner] = None
        self._scan_lock = asyncio.Lock()
        self._devices: dict[str, BLEDevice] = {}
        self._clients: dict[str, BleakClient] = {}
        self._connect_tasks: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def _spawn(self, coro: Coroutine[object, object, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Scanning ---------------------------------------------------------

    def scan(self, service_ids: Optional[Sequence[str]] = None) -> None:
        self._spawn(self._start_scan(list(service_ids) if service_ids else None))

    def stop_scan(self) -> None:
        self._spawn(self._stop_scan())

    async def _start_scan(self, service_ids: Optional[list[str]]) -> None:
        async with self._scan_lock:
            if self._scanner is not None:
                await self._halt_scanner()
            scanner = BleakScanner(
                detection_callback=self._on_detection, service_uuids=service_ids
            )
            try:
                await scanner.start()
            except (BleakError, OSError) as e:
                state = classify_adapter_error(e)
                logger.error("BLE scanner start failed (%s): %s", state.value, e)
                self.emit(AdapterStateChanged(state, f"{type(e).__name__}: {e}"))
                return
            self._scanner = scanner
            logger.info("BLE scan started")
            self.emit(AdapterStateChanged(AdapterState.POWERED_ON))

    async def _stop_scan(self) -> None:
        async with self._scan_lock:
            await self._halt_scanner()

    async def _halt_scanner(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
            logger.info("BLE scan stopped")
        except (BleakError, OSError) as e:
            logger.warning("Error stopping BLE scanner: %s", e)

    def _on_detection(self, device: BLEDevice, adv: AdvertisementData) -> None:
        self._devices[device.address] = device
        peripheral = Peripheral(
            identifier=device.address,
            name=adv.local_name or device.name,
            rssi=adv.rssi,
        )
        self.emit(
            PeripheralDiscovered(
                peripheral,
                {
                    "service_uuids": list(adv.service_uuids or []),
                    "manufacturer_data": dict(adv.manufacturer_data or {}),
                    "tx_power": adv.tx_power,
                },
            )
        )

    # Connection -------------------------------------------------------

    def connect(self, peripheral_id: str) -> None:
        if peripheral_id in self._connect_tasks:
            logger.debug("Connect to %s already in progress", peripheral_id)
            return
        task = self._spawn(self._connect(peripheral_id))
        self._connect_tasks[peripheral_id] = task
        task.add_done_callback(lambda _: self._connect_tasks.pop(peripheral_id, None))

    async def _connect(self, peripheral_id: str) -> None:
        target = self._devices.get(peripheral_id, peripheral_id)

        def on_disconnect(_: BleakClient) -> None:
            logger.warning("BLE connection lost: %s", peripheral_id)
            self._clients.pop(peripheral_id, None)
            self.emit(Disconnected(peripheral_id))

        client = BleakClient(
            target, disconnected_callback=on_disconnect, timeout=self._connect_timeout
        )
        logger.info("BLE connection starting: %s", peripheral_id)
        try:
            await client.connect()
        except asyncio.CancelledError:
            logger.info("BLE connection to %s cancelled", peripheral_id)
            raise
        except _CONNECT_ERRORS as e:
            logger.error("BLE connection to %s failed: %s", peripheral_id, e)
            self.emit(ConnectFailed(peripheral_id, f"{type(e).__name__}: {e}"))
            return
        if not client.is_connected:
            self.emit(ConnectFailed(peripheral_id, "BLE connection failed."))
            return
        self._clients[peripheral_id] = client
        logger.info("BLE connection established: %s", peripheral_id)
        self.emit(Connected(peripheral_id))

    def disconnect(self, peripheral_id: str) -> None:
        pending = self._connect_tasks.pop(peripheral_id, None)
        if pending is not None:
            pending.cancel()
        client = self._clients.get(peripheral_id)
        if client is None:
            self.emit(Disconnected(peripheral_id))
            return
        self._spawn(self._disconnect(client))

    async def _disconnect(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            logger.warning("Error disconnecting %s: %s", client.address, e)

    # GATT -------------------------------------------------------------

    def discover_services(
        self, peripheral_id: str, service_ids: Optional[Sequence[str]] = None
    ) -> None:
        client = self._clients.get(peripheral_id)
        if client is None:
            self.emit(ServicesDiscovered(peripheral_id, error="Not connected"))
            return
        wanted = {normalize_uuid(s) for s in service_ids} if service_ids else None
        try:
            # bleak resolves the GATT table while connecting
            found = tuple(
                service.uuid
                for service in client.services
                if wanted is None or normalize_uuid(service.uuid) in wanted
            )
        except BleakError as e:
            self.emit(ServicesDiscovered(peripheral_id, error=str(e)))
            return
        self.emit(ServicesDiscovered(peripheral_id, found))

    def discover_characteristics(
        self,
        peripheral_id: str,
        service_id: str,
        characteristic_ids: Optional[Sequence[str]] = None,
    ) -> None:
        client = self._clients.get(peripheral_id)
        if client is None:
            self.emit(
                CharacteristicsDiscovered(peripheral_id, service_id, error="Not connected")
            )
            return
        try:
            service = client.services.get_service(service_id)
        except BleakError as e:
            self.emit(CharacteristicsDiscovered(peripheral_id, service_id, error=str(e)))
            return
        if service is None:
            self.emit(
                CharacteristicsDiscovered(
                    peripheral_id, service_id, error=f"Service {service_id} not found"
                )
            )
            return
        wanted = (
            {normalize_uuid(c) for c in characteristic_ids} if characteristic_ids else None
        )
        found = tuple(
            characteristic.uuid
            for characteristic in service.characteristics
            if wanted is None or normalize_uuid(characteristic.uuid) in wanted
        )
        self.emit(CharacteristicsDiscovered(peripheral_id, service_id, found))

    def subscribe(self, peripheral_id: str, characteristic_id: str) -> None:
        client = self._clients.get(peripheral_id)
        if client is None:
            self.emit(
                NotificationStateChanged(peripheral_id, characteristic_id, "Not connected")
            )
            return
        self._spawn(self._subscribe(client, peripheral_id, characteristic_id))

    async def _subscribe(
        self, client: BleakClient, peripheral_id: str, characteristic_id: str
    ) -> None:
        def handle(_sender: object, data: bytearray) -> None:
            logger.debug("Notification %s: %d bytes", characteristic_id, len(data))
            self.emit(ValueUpdated(peripheral_id, characteristic_id, bytes(data)))

        try:
            await client.start_notify(characteristic_id, handle)
        except (BleakError, OSError) as e:
            self.emit(
                NotificationStateChanged(
                    peripheral_id, characteristic_id, f"{type(e).__name__}: {e}"
                )
            )
            return
        self.emit(NotificationStateChanged(peripheral_id, characteristic_id))

    # Teardown ---------------------------------------------------------

    async def close(self) -> None:
        async with self._scan_lock:
            await self._halt_scanner()
        for task in list(self._connect_tasks.values()):
            task.cancel()
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await self._disconnect(client)
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("BLE adapter closed")
