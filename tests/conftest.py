from __future__ import annotations

from typing import Callable, Optional, Sequence

import pytest

from mallet_monitor.adapter import Adapter
from mallet_monitor.session import BleSession, DiscoveryPolicy, ReconnectPolicy
from mallet_monitor.telemetry import TelemetryBuffer


class RecordingAdapter(Adapter):
    """Adapter that records every command and emits nothing by itself."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple] = []
        self.closed = False

    def named(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]

    def scan(self, service_ids: Optional[Sequence[str]] = None) -> None:
        self.calls.append(("scan", service_ids))

    def stop_scan(self) -> None:
        self.calls.append(("stop_scan",))

    def connect(self, peripheral_id: str) -> None:
        self.calls.append(("connect", peripheral_id))

    def disconnect(self, peripheral_id: str) -> None:
        self.calls.append(("disconnect", peripheral_id))

    def discover_services(self, peripheral_id, service_ids=None) -> None:
        self.calls.append(("discover_services", peripheral_id, tuple(service_ids or ())))

    def discover_characteristics(
        self, peripheral_id, service_id, characteristic_ids=None
    ) -> None:
        self.calls.append(
            (
                "discover_characteristics",
                peripheral_id,
                service_id,
                tuple(characteristic_ids or ()),
            )
        )

    def subscribe(self, peripheral_id: str, characteristic_id: str) -> None:
        self.calls.append(("subscribe", peripheral_id, characteristic_id))

    async def close(self) -> None:
        self.closed = True


class ManualHandle:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler stand-in: records timers and fires them on demand."""

    def __init__(self) -> None:
        self.handles: list[ManualHandle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[ManualHandle]:
        return [h for h in self.handles if not h.cancelled]

    def fire_next(self) -> ManualHandle:
        handle = self.pending[0]
        handle.cancelled = True
        handle.callback()
        return handle


@pytest.fixture
def adapter() -> RecordingAdapter:
    return RecordingAdapter()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def buffer() -> TelemetryBuffer:
    return TelemetryBuffer()


@pytest.fixture
def make_session(adapter, buffer, scheduler):
    def factory(
        policy: DiscoveryPolicy = DiscoveryPolicy.AUTO_CONNECT,
        reconnect: Optional[ReconnectPolicy] = None,
    ) -> BleSession:
        return BleSession(
            adapter,
            buffer,
            policy=policy,
            reconnect_policy=reconnect,
            scheduler=scheduler,
        )

    return factory
