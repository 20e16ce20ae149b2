"""Session ownership and lifecycle.

``MonitorRuntime`` runs the BLE session (and, optionally, the fake telemetry
generator) on a dedicated thread with its own asyncio event loop, so the Dash
server thread never blocks on Bluetooth I/O. Everything the session owns is
created when the runtime starts and released when it stops: scanning halted,
reconnect timers cancelled, the generator timer cancelled, the peripheral
disconnected and the adapter closed. Nothing is shared through module-level
state.

Other threads interact with the running session only through
``request_scan()`` / ``request_select()`` (marshalled onto the session's
loop) and the read-only ``status`` snapshot.

``run_headless()`` is the CLI's CSV mode: same session, no UI, decoded
samples streamed to standard output.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, TextIO, TypeVar

from .adapter import Adapter
from .errors import (
    AdapterUnavailableError,
    ConnectionFailedError,
    MalletMonitorError,
    SessionClosedError,
)
from .gatt import DEVICE_NAME
from .generator import FakeTelemetryGenerator
from .session import (
    BleSession,
    DiscoveryPolicy,
    ReconnectPolicy,
    SessionStatus,
)
from .telemetry import DEFAULT_CAPACITY, Channel, Sample, TelemetryBuffer

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class MonitorConfig:
    """Settings shared by the dashboard and the headless mode.

    Attributes:
        device_name: Advertised name the auto-connect policy matches.
        address: Connect straight to this identifier instead of scanning.
        policy: Auto-connect to the first name match, or let the user pick.
        buffer_size: Samples kept per channel for display.
        reconnect: Backoff applied after unexpected disconnects.
        connect_timeout: Seconds a single bleak connect may take.
        fake_data: Drive X/Y/Z from the fake generator as well.
        mock: Use the simulated mallet instead of the Bluetooth adapter.
    """

    device_name: str = DEVICE_NAME
    address: Optional[str] = None
    policy: DiscoveryPolicy = DiscoveryPolicy.AUTO_CONNECT
    buffer_size: int = DEFAULT_CAPACITY
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    connect_timeout: float = 20.0
    fake_data: bool = False
    mock: bool = False

    def create_adapter(self) -> Adapter:
        if self.mock:
            from .simulated import SimulatedAdapter

            return SimulatedAdapter(device_name=self.device_name)

        from .bleak_adapter import BleakAdapter

        return BleakAdapter(connect_timeout=self.connect_timeout)

    def create_session(self, adapter: Adapter, buffer: TelemetryBuffer) -> BleSession:
        return BleSession(
            adapter,
            buffer,
            policy=self.policy,
            device_name=self.device_name,
            reconnect_policy=self.reconnect,
        )


class MonitorRuntime:
    """Owns the session thread for the dashboard.

    Args:
        config: Monitor settings.
        buffer: Telemetry buffer shared with the display. Created from
            ``config.buffer_size`` when omitted.
        adapter_factory: Builds the adapter inside the session thread.
            Defaults to ``config.create_adapter``.
    """

    def __init__(
        self,
        config: MonitorConfig,
        buffer: Optional[TelemetryBuffer] = None,
        adapter_factory: Optional[Callable[[], Adapter]] = None,
    ) -> None:
        self.config = config
        self.buffer = buffer or TelemetryBuffer(capacity=config.buffer_size)
        self._adapter_factory = adapter_factory or config.create_adapter

        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._session: Optional[BleSession] = None
        self._generator: Optional[FakeTelemetryGenerator] = None
        self._ready = threading.Event()
        self._startup_error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def status(self) -> SessionStatus:
        session = self._session
        return session.status if session is not None else SessionStatus()

    @property
    def generator(self) -> Optional[FakeTelemetryGenerator]:
        return self._generator

    def start(self, timeout: float = 5.0) -> None:
        """Start the session thread and wait until the session is live.

        Idempotent while the thread is alive.

        Raises:
            Exception: Whatever the adapter factory raised.
        """
        if self.running:
            return
        self._ready.clear()
        self._startup_error = None
        self._thread = threading.Thread(
            target=self._worker, name="mallet-session", daemon=True
        )
        self._thread.start()
        if not self._ready.wait(timeout):
            logger.warning("Session thread did not become ready within %.1fs", timeout)
        if self._startup_error is not None:
            raise self._startup_error

    def stop(self, timeout: float = 5.0) -> None:
        """Shut the session down and join its thread."""
        loop, session = self._loop, self._session
        if loop is not None and session is not None:
            try:
                loop.call_soon_threadsafe(session.shutdown)
            except RuntimeError:
                logger.debug("Session loop already closed")

        thread = self._thread
        if thread is not None and thread.is_alive():
            logger.info("⏳ Waiting for session thread to stop...")
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("⚠️ Session thread did not stop gracefully")
            else:
                logger.info("✅ Session thread stopped")

    def request_scan(self, timeout: float = 5.0) -> None:
        """Ask the session to start scanning (the UI's Connect button)."""
        self._call(lambda session: session.start_scanning(), timeout)

    def request_select(self, peripheral_id: str, timeout: float = 5.0) -> None:
        """Ask the session to connect to a candidate from the scan list."""
        self._call(lambda session: session.select(peripheral_id), timeout)

    def _call(self, action: Callable[[BleSession], T], timeout: float) -> T:
        loop, session = self._loop, self._session
        if loop is None or session is None or session.closed or not self.running:
            raise SessionClosedError("Monitor runtime is not running")

        async def invoke() -> T:
            return action(session)

        future = asyncio.run_coroutine_threadsafe(invoke(), loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise MalletMonitorError(
                f"Session did not respond within {timeout:.1f}s"
            ) from e

    def _worker(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            loop.run_until_complete(self._main())
        except Exception as e:
            logger.error(f"💥 Session worker fatal error: {e}")
        finally:
            self._loop = None
            loop.close()
            self._ready.set()
            logger.info("🏁 Session worker finished")

    async def _main(self) -> None:
        try:
            adapter = self._adapter_factory()
        except Exception as e:
            self._startup_error = e
            raise

        session = self.config.create_session(adapter, self.buffer)
        generator = (
            FakeTelemetryGenerator(self.buffer) if self.config.fake_data else None
        )
        self._session = session
        self._generator = generator
        try:
            if generator is not None:
                generator.start()
            if self.config.address:
                session.connect(self.config.address)
            self._ready.set()
            await session.run()
        finally:
            if generator is not None:
                generator.stop()
            session.shutdown()
            await adapter.close()


async def stream_samples(
    config: MonitorConfig,
    *,
    show_header: bool = True,
    out: Optional[TextIO] = None,
    adapter: Optional[Adapter] = None,
) -> None:
    """Connect to the mallet and write every decoded sample as a CSV line.

    Always uses the auto-connect policy since there is nobody to pick from a
    candidate list. Runs until interrupted, or until the session reports an
    error it will not recover from by itself.

    Raises:
        AdapterUnavailableError: Bluetooth is off, forbidden or missing.
        ConnectionFailedError: The initial connect failed, or reconnecting
            gave up.
    """
    out = out or sys.stdout
    adapter = adapter or config.create_adapter()
    buffer = TelemetryBuffer(capacity=config.buffer_size)
    session = BleSession(
        adapter,
        buffer,
        policy=DiscoveryPolicy.AUTO_CONNECT,
        device_name=config.device_name,
        reconnect_policy=config.reconnect,
    )
    loop = asyncio.get_running_loop()
    fatal: list[MalletMonitorError] = []

    def on_sample(channel: Channel, sample: Sample) -> None:
        print(f"{channel.value},{sample.x:g},{sample.value:.6f}", file=out, flush=True)

    def on_error(error: MalletMonitorError) -> None:
        if isinstance(error, (AdapterUnavailableError, ConnectionFailedError)):
            fatal.append(error)
            loop.call_soon(session.shutdown)

    session.add_sample_listener(on_sample)
    session.add_error_listener(on_error)

    if show_header:
        print("channel,x,value", file=out, flush=True)
    try:
        if config.address:
            session.connect(config.address)
        else:
            session.start_scanning()
        await session.run()
    finally:
        session.shutdown()
        await adapter.close()
    if fatal:
        raise fatal[0]


def run_headless(config: MonitorConfig, show_header: bool = True) -> int:
    """Blocking CSV mode wrapper.

    Returns:
        0 on normal completion, 130 on Ctrl+C, 1 on failure.
    """
    try:
        asyncio.run(stream_samples(config, show_header=show_header))
        return 0
    except KeyboardInterrupt:
        return 130
    except MalletMonitorError as e:
        logger.error("Fatal error: %s", e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
