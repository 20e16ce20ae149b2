import asyncio
import struct

import pytest

from mallet_monitor.adapter import (
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
from mallet_monitor.errors import (
    AdapterUnavailableError,
    CharacteristicReadError,
    DecodeError,
    DisconnectedUnexpectedlyError,
    DiscoveryError,
    ReconnectExhaustedError,
    SessionClosedError,
    SubscriptionError,
    UnknownPeripheralError,
)
from mallet_monitor.gatt import (
    ACCEL_X_CHAR,
    ACCEL_Y_CHAR,
    CHARACTERISTIC_UUIDS,
    FORCE_CHAR,
    SERVICE_UUID,
)
from mallet_monitor.session import (
    ConnectionState,
    DiscoveryPolicy,
    ReconnectPolicy,
)
from mallet_monitor.telemetry import Channel

MALLET = Peripheral("AA:BB:CC:DD:EE:01", "TechPolo_Mallet", -50)
OTHER = Peripheral("AA:BB:CC:DD:EE:02", "Other", -70)


def discovered(peripheral):
    return PeripheralDiscovered(peripheral)


def scanning_session(make_session, **kwargs):
    session = make_session(**kwargs)
    session.handle_event(AdapterStateChanged(AdapterState.POWERED_ON))
    session.start_scanning()
    return session


def connected_session(make_session, **kwargs):
    session = scanning_session(make_session, **kwargs)
    session.handle_event(discovered(MALLET))
    session.handle_event(Connected(MALLET.identifier))
    return session


def collect_errors(session):
    errors = []
    session.add_error_listener(errors.append)
    return errors


# ----------------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------------


def test_start_scanning_uses_no_service_filter(make_session, adapter):
    session = scanning_session(make_session)

    assert adapter.calls == [("scan", None)]
    assert session.status.scanning
    assert session.status.connection_state is ConnectionState.SCANNING
    assert "Starting Bluetooth scan..." in session.status.activity


def test_auto_connect_picks_only_the_named_mallet(make_session, adapter):
    session = scanning_session(make_session)

    session.handle_event(discovered(OTHER))
    session.handle_event(discovered(MALLET))
    session.handle_event(discovered(MALLET))

    assert adapter.named("connect") == [("connect", MALLET.identifier)]
    assert adapter.named("stop_scan") == [("stop_scan",)]
    assert session.status.connection_state is ConnectionState.CONNECTING
    assert session.status.peripheral == MALLET


def test_auto_connect_requires_exact_name(make_session, adapter):
    session = scanning_session(make_session)

    session.handle_event(discovered(Peripheral("X1", "techpolo_mallet")))
    session.handle_event(discovered(Peripheral("X2", "TechPolo_Mallet2")))
    session.handle_event(discovered(Peripheral("X3")))

    assert adapter.named("connect") == []
    assert session.status.scanning


def test_discovery_ignored_when_not_scanning(make_session, adapter):
    session = make_session()
    session.handle_event(AdapterStateChanged(AdapterState.POWERED_ON))

    session.handle_event(discovered(MALLET))

    assert adapter.named("connect") == []


def test_manual_policy_deduplicates_candidates(make_session, adapter):
    session = scanning_session(make_session, policy=DiscoveryPolicy.MANUAL_SELECT)

    session.handle_event(discovered(Peripheral(OTHER.identifier)))
    session.handle_event(discovered(MALLET))
    session.handle_event(discovered(OTHER))
    session.handle_event(discovered(MALLET))

    candidates = session.status.candidates
    assert [p.identifier for p in candidates] == [OTHER.identifier, MALLET.identifier]
    # Name that showed up in a later advertisement replaces the unnamed entry
    assert candidates[0].name == "Other"
    assert adapter.named("connect") == []


def test_manual_select_connects_and_rejects_unknown(make_session, adapter):
    session = scanning_session(make_session, policy=DiscoveryPolicy.MANUAL_SELECT)
    session.handle_event(discovered(MALLET))

    with pytest.raises(UnknownPeripheralError):
        session.select("never-seen")
    assert adapter.named("connect") == []

    session.select(MALLET.identifier)

    assert adapter.named("connect") == [("connect", MALLET.identifier)]
    assert not session.status.scanning


def test_rescan_clears_candidates(make_session):
    session = scanning_session(make_session, policy=DiscoveryPolicy.MANUAL_SELECT)
    session.handle_event(discovered(OTHER))

    session.start_scanning()

    assert session.status.candidates == ()


def test_stop_scanning_is_idempotent(make_session, adapter):
    session = scanning_session(make_session)

    session.stop_scanning()
    session.stop_scanning()

    assert adapter.named("stop_scan") == [("stop_scan",)]
    assert session.status.connection_state is ConnectionState.IDLE


# ----------------------------------------------------------------------
# Connection and GATT pipeline
# ----------------------------------------------------------------------


def test_connected_mallet_is_discovered_and_subscribed(make_session, adapter, buffer):
    session = connected_session(make_session)

    assert session.status.is_connected
    assert adapter.named("discover_services") == [
        ("discover_services", MALLET.identifier, (SERVICE_UUID,))
    ]

    session.handle_event(ServicesDiscovered(MALLET.identifier, (SERVICE_UUID.upper(),)))
    assert adapter.named("discover_characteristics") == [
        (
            "discover_characteristics",
            MALLET.identifier,
            SERVICE_UUID.upper(),
            tuple(CHARACTERISTIC_UUIDS),
        )
    ]

    unrelated = "00002a19-0000-1000-8000-00805f9b34fb"
    session.handle_event(
        CharacteristicsDiscovered(
            MALLET.identifier,
            SERVICE_UUID,
            tuple(CHARACTERISTIC_UUIDS) + (unrelated,),
        )
    )
    subscribed = [call[2] for call in adapter.named("subscribe")]
    assert subscribed == list(CHARACTERISTIC_UUIDS)

    session.handle_event(NotificationStateChanged(MALLET.identifier, FORCE_CHAR))
    assert "Receiving Force" in session.status.activity


def test_value_update_is_decoded_into_its_channel(make_session, buffer):
    session = connected_session(make_session)
    received = []
    session.add_sample_listener(lambda channel, sample: received.append((channel, sample)))

    session.handle_event(
        ValueUpdated(MALLET.identifier, ACCEL_X_CHAR, struct.pack("<f", 23.5))
    )
    session.handle_event(
        ValueUpdated(MALLET.identifier, ACCEL_Y_CHAR, struct.pack("<f", -2.0))
    )

    assert [s.value for s in buffer.snapshot(Channel.X)] == [23.5]
    assert [s.value for s in buffer.snapshot(Channel.Y)] == [-2.0]
    assert buffer.snapshot(Channel.FORCE) == []
    assert received[0][0] is Channel.X


def test_short_payload_reports_decode_error(make_session, buffer):
    session = connected_session(make_session)
    errors = collect_errors(session)

    session.handle_event(ValueUpdated(MALLET.identifier, FORCE_CHAR, b"\x01\x02"))

    assert buffer.snapshot(Channel.FORCE) == []
    assert len(errors) == 1
    assert isinstance(errors[0], DecodeError)
    assert session.status.is_connected


def test_value_error_reports_read_error(make_session, buffer):
    session = connected_session(make_session)
    errors = collect_errors(session)

    session.handle_event(ValueUpdated(MALLET.identifier, FORCE_CHAR, error="read failed"))

    assert isinstance(errors[0], CharacteristicReadError)
    assert buffer.size(Channel.FORCE) == 0


def test_failing_sample_listener_does_not_break_pipeline(make_session, buffer):
    session = connected_session(make_session)

    def broken(channel, sample):
        raise RuntimeError("listener bug")

    session.add_sample_listener(broken)
    session.handle_event(
        ValueUpdated(MALLET.identifier, ACCEL_X_CHAR, struct.pack("<f", 1.0))
    )
    session.handle_event(
        ValueUpdated(MALLET.identifier, ACCEL_X_CHAR, struct.pack("<f", 2.0))
    )

    assert buffer.size(Channel.X) == 2


def test_discovery_errors_keep_connection(make_session, adapter):
    session = connected_session(make_session)
    errors = collect_errors(session)

    session.handle_event(ServicesDiscovered(MALLET.identifier, error="gatt busy"))
    session.handle_event(ServicesDiscovered(MALLET.identifier, ("180f",)))
    session.handle_event(
        CharacteristicsDiscovered(MALLET.identifier, SERVICE_UUID, error="oops")
    )
    session.handle_event(
        NotificationStateChanged(MALLET.identifier, ACCEL_X_CHAR, error="denied")
    )

    assert [type(e) for e in errors] == [
        DiscoveryError,
        DiscoveryError,
        DiscoveryError,
        SubscriptionError,
    ]
    assert session.status.is_connected
    assert adapter.named("disconnect") == []
    assert adapter.named("discover_characteristics") == []


def test_events_from_other_peripherals_are_ignored(make_session, adapter, buffer):
    session = connected_session(make_session)

    session.handle_event(
        ValueUpdated(OTHER.identifier, ACCEL_X_CHAR, struct.pack("<f", 1.0))
    )
    session.handle_event(Disconnected(OTHER.identifier))

    assert buffer.size(Channel.X) == 0
    assert session.status.is_connected


def test_initial_connect_failure_is_reported(make_session, adapter, scheduler):
    session = scanning_session(make_session)
    errors = collect_errors(session)
    session.handle_event(discovered(MALLET))

    session.handle_event(ConnectFailed(MALLET.identifier, "timeout"))

    assert session.status.connection_state is ConnectionState.DISCONNECTED
    assert scheduler.handles == []
    assert "timeout" in str(errors[0])


def test_direct_connect_by_identifier(make_session, adapter):
    session = make_session()

    session.connect("11:22:33:44:55:66")

    assert adapter.named("connect") == [("connect", "11:22:33:44:55:66")]
    assert session.status.connection_state is ConnectionState.CONNECTING


# ----------------------------------------------------------------------
# Reconnect
# ----------------------------------------------------------------------


def test_clean_disconnect_reconnects_exactly_once(make_session, adapter, scheduler):
    session = connected_session(make_session)
    errors = collect_errors(session)

    session.handle_event(Disconnected(MALLET.identifier))

    assert session.status.connection_state is ConnectionState.RECONNECTING
    assert errors == []
    assert [h.delay for h in scheduler.handles] == [1.0]

    scheduler.fire_next()

    assert adapter.named("connect") == [("connect", MALLET.identifier)] * 2
    assert session.status.connection_state is ConnectionState.CONNECTING

    session.handle_event(Connected(MALLET.identifier))
    assert session.status.is_connected
    assert session.status.reconnect_attempt == 0
    assert scheduler.pending == []


def test_error_disconnect_is_reported_then_retried(make_session, scheduler):
    session = connected_session(make_session)
    errors = collect_errors(session)

    session.handle_event(Disconnected(MALLET.identifier, error="link lost"))

    assert isinstance(errors[0], DisconnectedUnexpectedlyError)
    assert len(scheduler.pending) == 1


def test_backoff_grows_and_gives_up(make_session, adapter, scheduler):
    session = connected_session(
        make_session, reconnect=ReconnectPolicy(max_attempts=3, base_delay=1.0)
    )
    errors = collect_errors(session)

    session.handle_event(Disconnected(MALLET.identifier))
    for _ in range(3):
        scheduler.fire_next()
        session.handle_event(ConnectFailed(MALLET.identifier, "not found"))

    assert [h.delay for h in scheduler.handles] == [1.0, 1.5, 2.25]
    assert len(adapter.named("connect")) == 4
    assert session.status.connection_state is ConnectionState.GAVE_UP
    assert isinstance(errors[-1], ReconnectExhaustedError)
    assert scheduler.pending == []


def test_backoff_delay_is_capped():
    policy = ReconnectPolicy(base_delay=2.0, multiplier=3.0, max_delay=10.0)

    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 6.0, 10.0, 10.0]


def test_zero_attempts_disables_reconnect(make_session, scheduler):
    session = connected_session(make_session, reconnect=ReconnectPolicy(max_attempts=0))

    session.handle_event(Disconnected(MALLET.identifier))

    assert scheduler.handles == []
    assert session.status.connection_state is ConnectionState.GAVE_UP


def test_switching_peripheral_is_not_an_unexpected_disconnect(
    make_session, adapter, scheduler
):
    session = scanning_session(make_session, policy=DiscoveryPolicy.MANUAL_SELECT)
    session.handle_event(discovered(MALLET))
    session.select(MALLET.identifier)
    session.handle_event(Connected(MALLET.identifier))
    assert session.status.is_connected

    session.start_scanning()
    session.handle_event(discovered(OTHER))

    session.select(OTHER.identifier)
    session.handle_event(Disconnected(MALLET.identifier))

    assert adapter.named("disconnect") == [("disconnect", MALLET.identifier)]
    assert adapter.named("connect")[-1] == ("connect", OTHER.identifier)
    assert scheduler.handles == []
    assert session.status.connection_state is ConnectionState.CONNECTING


def test_switching_while_connecting_aborts_the_first_connect(
    make_session, adapter, scheduler
):
    session = scanning_session(make_session, policy=DiscoveryPolicy.MANUAL_SELECT)
    session.handle_event(discovered(MALLET))
    session.select(MALLET.identifier)
    session.start_scanning()
    session.handle_event(discovered(OTHER))

    session.select(OTHER.identifier)

    assert adapter.named("connect") == [
        ("connect", MALLET.identifier),
        ("connect", OTHER.identifier),
    ]
    assert adapter.named("disconnect") == [("disconnect", MALLET.identifier)]

    # The superseded connect completes anyway and is torn down again
    session.handle_event(Connected(MALLET.identifier))
    assert adapter.named("disconnect") == [("disconnect", MALLET.identifier)] * 2
    assert not session.status.is_connected
    assert adapter.named("discover_services") == []

    session.handle_event(Disconnected(MALLET.identifier))
    session.handle_event(Connected(OTHER.identifier))

    assert scheduler.handles == []
    assert session.status.is_connected
    assert session.status.peripheral == OTHER
    assert adapter.named("discover_services") == [
        ("discover_services", OTHER.identifier, (SERVICE_UUID,))
    ]


def test_shutdown_aborts_connect_in_flight_during_rescan(make_session, adapter):
    session = scanning_session(make_session, policy=DiscoveryPolicy.MANUAL_SELECT)
    session.handle_event(discovered(MALLET))
    session.select(MALLET.identifier)
    session.start_scanning()

    session.shutdown()

    assert adapter.named("disconnect") == [("disconnect", MALLET.identifier)]


def test_rescan_cancels_pending_reconnect(make_session, adapter, scheduler):
    session = connected_session(make_session)
    session.handle_event(Disconnected(MALLET.identifier))
    handle = scheduler.handles[0]

    session.start_scanning()

    assert handle.cancelled
    assert scheduler.pending == []
    assert session.status.connection_state is ConnectionState.SCANNING
    assert session.status.reconnect_attempt == 0

    session.handle_event(discovered(MALLET))
    assert adapter.named("connect") == [("connect", MALLET.identifier)] * 2


# ----------------------------------------------------------------------
# Adapter state
# ----------------------------------------------------------------------


def test_power_off_while_connected(make_session, scheduler):
    session = connected_session(make_session)
    errors = collect_errors(session)

    session.handle_event(AdapterStateChanged(AdapterState.POWERED_OFF))

    assert isinstance(errors[0], AdapterUnavailableError)
    assert errors[0].state is AdapterState.POWERED_OFF
    assert session.status.connection_state is ConnectionState.DISCONNECTED
    assert not session.status.scanning

    # Link drop that follows the power loss does not start reconnecting
    session.handle_event(Disconnected(MALLET.identifier, error="adapter off"))
    assert len(errors) == 1
    assert scheduler.handles == []
    assert session.status.connection_state is ConnectionState.DISCONNECTED


def test_failed_probe_scan_reports_again_and_ends_scan(make_session, adapter):
    session = make_session()
    errors = collect_errors(session)
    session.handle_event(AdapterStateChanged(AdapterState.POWERED_OFF))

    session.start_scanning()
    assert session.status.scanning
    session.handle_event(AdapterStateChanged(AdapterState.POWERED_OFF))

    assert len(errors) == 2
    assert all(isinstance(e, AdapterUnavailableError) for e in errors)
    assert session.status.scanning is False
    assert session.status.connection_state is ConnectionState.DISCONNECTED

    # The user can retry once Bluetooth is back
    session.start_scanning()
    session.handle_event(AdapterStateChanged(AdapterState.POWERED_ON))
    session.handle_event(discovered(MALLET))
    assert adapter.named("scan") == [("scan", None), ("scan", None)]
    assert adapter.named("connect") == [("connect", MALLET.identifier)]


def test_repeated_powered_on_is_noted_once(make_session):
    session = make_session()

    session.handle_event(AdapterStateChanged(AdapterState.POWERED_ON))
    session.handle_event(AdapterStateChanged(AdapterState.POWERED_ON))

    assert session.status.activity.count("Bluetooth is powered on.") == 1


def test_unsupported_adapter_refuses_to_scan(make_session, adapter):
    session = make_session()
    session.handle_event(AdapterStateChanged(AdapterState.UNSUPPORTED, "no radio"))

    with pytest.raises(AdapterUnavailableError):
        session.start_scanning()
    assert adapter.named("scan") == []


def test_powered_off_adapter_still_probes_with_scan(make_session, adapter):
    session = make_session()
    session.handle_event(AdapterStateChanged(AdapterState.POWERED_OFF))

    session.start_scanning()
    session.handle_event(discovered(MALLET))

    assert adapter.named("scan") == [("scan", None)]
    # No discoveries are trusted until the adapter reports power again
    assert adapter.named("connect") == []

    session.handle_event(AdapterStateChanged(AdapterState.POWERED_ON))
    session.handle_event(discovered(MALLET))
    assert adapter.named("connect") == [("connect", MALLET.identifier)]
    assert "Bluetooth is powered on." in session.status.activity


# ----------------------------------------------------------------------
# Shutdown
# ----------------------------------------------------------------------


def test_shutdown_disconnects_and_silences_events(make_session, adapter, buffer):
    session = connected_session(make_session)
    calls_before = len(adapter.calls)

    session.shutdown()

    assert adapter.calls[calls_before:] == [("disconnect", MALLET.identifier)]
    assert session.closed
    assert session.status.connection_state is ConnectionState.IDLE

    session.handle_event(Disconnected(MALLET.identifier, error="gone"))
    session.handle_event(Connected(MALLET.identifier))
    session.handle_event(
        ValueUpdated(MALLET.identifier, ACCEL_X_CHAR, struct.pack("<f", 1.0))
    )
    session.shutdown()
    session.stop_scanning()

    assert adapter.calls[calls_before:] == [("disconnect", MALLET.identifier)]
    assert buffer.size(Channel.X) == 0


def test_shutdown_while_scanning_stops_scan_once(make_session, adapter):
    session = scanning_session(make_session)

    session.shutdown()
    session.shutdown()

    assert adapter.named("stop_scan") == [("stop_scan",)]
    assert adapter.named("disconnect") == []


def test_shutdown_cancels_pending_reconnect(make_session, adapter, scheduler):
    session = connected_session(make_session)
    session.handle_event(Disconnected(MALLET.identifier))
    handle = scheduler.handles[0]

    session.shutdown()

    assert handle.cancelled
    # A timer that already fired past cancellation must not reconnect
    handle.callback()
    assert adapter.named("connect") == [("connect", MALLET.identifier)]


def test_operations_after_shutdown_raise(make_session):
    session = make_session(policy=DiscoveryPolicy.MANUAL_SELECT)
    session.shutdown()

    with pytest.raises(SessionClosedError):
        session.start_scanning()
    with pytest.raises(SessionClosedError):
        session.select(MALLET.identifier)
    with pytest.raises(SessionClosedError):
        session.connect(MALLET.identifier)


def test_run_processes_posted_events_until_shutdown(make_session, adapter, buffer):
    async def scenario():
        session = make_session()
        task = asyncio.create_task(session.run())

        adapter.emit(AdapterStateChanged(AdapterState.POWERED_ON))
        session.start_scanning()
        adapter.emit(discovered(MALLET))
        adapter.emit(Connected(MALLET.identifier))
        adapter.emit(
            ValueUpdated(MALLET.identifier, FORCE_CHAR, struct.pack("<f", 9.5))
        )
        for _ in range(5):
            await asyncio.sleep(0)

        status = session.status
        session.shutdown()
        await asyncio.wait_for(task, timeout=1.0)
        return status

    status = asyncio.run(scenario())

    assert status.is_connected
    assert [s.value for s in buffer.snapshot(Channel.FORCE)] == [9.5]
