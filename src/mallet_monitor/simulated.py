"""Simulated mallet for running the monitor without hardware.

``SimulatedAdapter`` behaves like a Bluetooth stack that can see two
peripherals: the mallet and an unrelated device named ``Other``. The mallet
exposes the real GATT layout and, once subscribed, streams float payloads
encoded exactly like the firmware's.

The waveforms are chosen to look like a mallet swing:
- X/Y acceleration: slow sinusoids with Gaussian noise
- Z acceleration: 1 g gravity offset plus a small oscillation
- Force: periodic strike pulses on a small noise floor
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from typing import Coroutine, Optional, Sequence

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
from .gatt import (
    CHARACTERISTIC_UUIDS,
    DEVICE_NAME,
    SERVICE_UUID,
    channel_for,
    encode_sample,
    normalize_uuid,
)
from .telemetry import Channel

logger = logging.getLogger(__name__)

MALLET_ID = "SIM:MALLET:01"
OTHER_ID = "SIM:OTHER:02"


def simulated_value(channel: Channel, elapsed: float) -> float:
    """Synthetic reading for ``channel`` ``elapsed`` seconds into the stream."""
    if channel is Channel.X:
        return 0.5 * math.sin(2 * math.pi * 0.5 * elapsed) + random.gauss(0, 0.1)
    if channel is Channel.Y:
        return 0.3 * math.cos(2 * math.pi * 0.3 * elapsed) + random.gauss(0, 0.1)
    if channel is Channel.Z:
        return 1.0 + 0.2 * math.sin(2 * math.pi * 0.1 * elapsed) + random.gauss(0, 0.05)
    # One strike every 2 seconds, decaying over ~0.3 s
    phase = elapsed % 2.0
    strike = 80.0 * math.exp(-phase / 0.1) if phase < 0.3 else 0.0
    return max(0.0, strike + random.gauss(2.0, 0.5))


class SimulatedAdapter(Adapter):
    """In-process stand-in for ``BleakAdapter``.

    Args:
        update_interval: Seconds between notifications per characteristic.
        discovery_delay: Seconds between scan start and each advertisement.
        device_name: Name the simulated mallet advertises.
    """

    def __init__(
        self,
        update_interval: float = 0.1,
        discovery_delay: float = 0.2,
        device_name: str = DEVICE_NAME,
    ) -> None:
        super().__init__()
        self._update_interval = update_interval
        self._discovery_delay = discovery_delay
        self._peripherals = {
            MALLET_ID: Peripheral(MALLET_ID, device_name, rssi=-48),
            OTHER_ID: Peripheral(OTHER_ID, "Other", rssi=-71),
        }
        self._scan_task: Optional[asyncio.Task[None]] = None
        self._connected: set[str] = set()
        self._streams: dict[tuple[str, str], asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._start_time = time.time()

    def _spawn(self, coro: Coroutine[object, object, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def scan(self, service_ids: Optional[Sequence[str]] = None) -> None:
        self.stop_scan()
        self.emit(AdapterStateChanged(AdapterState.POWERED_ON))
        self._scan_task = self._spawn(self._advertise())

    async def _advertise(self) -> None:
        # Advertise each peripheral twice, like repeated advertising packets
        for _ in range(2):
            for peripheral in self._peripherals.values():
                await asyncio.sleep(self._discovery_delay)
                self.emit(PeripheralDiscovered(peripheral, {"service_uuids": []}))

    def stop_scan(self) -> None:
        if self._scan_task is not None:
            self._scan_task.cancel()
            self._scan_task = None

    def connect(self, peripheral_id: str) -> None:
        self._spawn(self._connect(peripheral_id))

    async def _connect(self, peripheral_id: str) -> None:
        await asyncio.sleep(self._discovery_delay)
        if peripheral_id not in self._peripherals:
            self.emit(ConnectFailed(peripheral_id, "Peripheral not in range"))
            return
        self._connected.add(peripheral_id)
        logger.info("Simulated connection established: %s", peripheral_id)
        self.emit(Connected(peripheral_id))

    def disconnect(self, peripheral_id: str) -> None:
        self._drop(peripheral_id)
        self.emit(Disconnected(peripheral_id))

    def drop_link(self, peripheral_id: str = MALLET_ID) -> None:
        """Simulate the peripheral going out of range."""
        self._drop(peripheral_id)
        self.emit(Disconnected(peripheral_id, "Connection timed out"))

    def _drop(self, peripheral_id: str) -> None:
        self._connected.discard(peripheral_id)
        for key in [k for k in self._streams if k[0] == peripheral_id]:
            self._streams.pop(key).cancel()

    def discover_services(
        self, peripheral_id: str, service_ids: Optional[Sequence[str]] = None
    ) -> None:
        if peripheral_id not in self._connected:
            self.emit(ServicesDiscovered(peripheral_id, error="Not connected"))
            return
        services = (SERVICE_UUID,) if peripheral_id == MALLET_ID else ()
        self.emit(ServicesDiscovered(peripheral_id, services))

    def discover_characteristics(
        self,
        peripheral_id: str,
        service_id: str,
        characteristic_ids: Optional[Sequence[str]] = None,
    ) -> None:
        if normalize_uuid(service_id) != SERVICE_UUID:
            self.emit(
                CharacteristicsDiscovered(
                    peripheral_id, service_id, error=f"Service {service_id} not found"
                )
            )
            return
        self.emit(
            CharacteristicsDiscovered(peripheral_id, service_id, CHARACTERISTIC_UUIDS)
        )

    def subscribe(self, peripheral_id: str, characteristic_id: str) -> None:
        channel = channel_for(characteristic_id)
        if peripheral_id not in self._connected or channel is None:
            self.emit(
                NotificationStateChanged(
                    peripheral_id, characteristic_id, "Characteristic not found"
                )
            )
            return
        key = (peripheral_id, characteristic_id)
        if key not in self._streams:
            self._streams[key] = self._spawn(
                self._notify(peripheral_id, characteristic_id, channel)
            )
        self.emit(NotificationStateChanged(peripheral_id, characteristic_id))

    async def _notify(
        self, peripheral_id: str, characteristic_id: str, channel: Channel
    ) -> None:
        while True:
            await asyncio.sleep(self._update_interval)
            value = simulated_value(channel, time.time() - self._start_time)
            self.emit(ValueUpdated(peripheral_id, characteristic_id, encode_sample(value)))

    async def close(self) -> None:
        self.stop_scan()
        self._connected.clear()
        self._streams.clear()
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
