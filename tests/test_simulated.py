"""End-to-end runs of the session against the simulated mallet."""

import asyncio
import io

import pytest

from mallet_monitor.errors import ConnectionFailedError
from mallet_monitor.runtime import MonitorConfig, stream_samples
from mallet_monitor.session import BleSession, ConnectionState, ReconnectPolicy
from mallet_monitor.simulated import MALLET_ID, SimulatedAdapter
from mallet_monitor.telemetry import Channel, TelemetryBuffer


def fast_adapter():
    return SimulatedAdapter(update_interval=0.01, discovery_delay=0.01)


async def wait_until(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_session_streams_all_channels_from_simulated_mallet():
    buffer = TelemetryBuffer()

    async def scenario():
        adapter = fast_adapter()
        session = BleSession(adapter, buffer)
        task = asyncio.create_task(session.run())
        session.start_scanning()

        await wait_until(lambda: all(buffer.size(c) >= 3 for c in Channel))
        status = session.status

        session.shutdown()
        await asyncio.wait_for(task, timeout=1.0)
        await adapter.close()
        return status

    status = asyncio.run(scenario())

    assert status.is_connected
    assert status.peripheral.identifier == MALLET_ID
    assert status.last_error is None


def test_session_reconnects_after_link_loss():
    buffer = TelemetryBuffer()

    async def scenario():
        adapter = fast_adapter()
        session = BleSession(
            adapter, buffer, reconnect_policy=ReconnectPolicy(base_delay=0.01)
        )
        errors = []
        session.add_error_listener(errors.append)
        task = asyncio.create_task(session.run())
        session.start_scanning()
        await wait_until(lambda: session.status.is_connected)

        adapter.drop_link()
        await wait_until(lambda: errors)
        await wait_until(lambda: session.status.is_connected)
        before = buffer.stats(Channel.FORCE).total
        await wait_until(lambda: buffer.stats(Channel.FORCE).total > before)

        session.shutdown()
        await asyncio.wait_for(task, timeout=1.0)
        await adapter.close()
        return session.status

    status = asyncio.run(scenario())

    assert "Error: " in "\n".join(status.activity)
    assert status.connection_state is ConnectionState.IDLE


def test_stream_samples_writes_csv_lines():
    out = io.StringIO()

    async def scenario():
        task = asyncio.create_task(
            stream_samples(MonitorConfig(mock=True), out=out, adapter=fast_adapter())
        )
        await wait_until(lambda: out.getvalue().count("\n") > 10)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    lines = out.getvalue().splitlines()
    assert lines[0] == "channel,x,value"
    channel, x, value = lines[1].split(",")
    assert channel in {c.value for c in Channel}
    float(x)
    float(value)


def test_stream_samples_fails_on_unreachable_address():
    out = io.StringIO()
    config = MonitorConfig(mock=True, address="SIM:NOWHERE:99")

    async def scenario():
        await stream_samples(
            config, show_header=False, out=out, adapter=fast_adapter()
        )

    with pytest.raises(ConnectionFailedError):
        asyncio.run(asyncio.wait_for(scenario(), timeout=3.0))
    assert out.getvalue() == ""
