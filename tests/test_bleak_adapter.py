import pytest
from bleak.exc import BleakError

from mallet_monitor.adapter import (
    AdapterState,
    CharacteristicsDiscovered,
    Disconnected,
    NotificationStateChanged,
    ServicesDiscovered,
)
from mallet_monitor.bleak_adapter import BleakAdapter, classify_adapter_error
from mallet_monitor.gatt import FORCE_CHAR, SERVICE_UUID


@pytest.mark.parametrize(
    "message, state",
    [
        ("Bluetooth device is turned off", AdapterState.POWERED_OFF),
        ("org.bluez.Error.NotReady", AdapterState.POWERED_OFF),
        ("BLE is not authorized - check macOS privacy settings", AdapterState.UNAUTHORIZED),
        ("Permission denied", AdapterState.UNAUTHORIZED),
        ("No Bluetooth adapters found.", AdapterState.UNSUPPORTED),
    ],
)
def test_classify_adapter_error(message, state):
    assert classify_adapter_error(BleakError(message)) is state


@pytest.fixture
def events():
    return []


@pytest.fixture
def bleak_adapter(events):
    adapter = BleakAdapter()
    adapter.bind(events.append)
    return adapter


def test_disconnect_unknown_peripheral_reports_disconnected(bleak_adapter, events):
    bleak_adapter.disconnect("AA:BB")

    assert events == [Disconnected("AA:BB")]


def test_gatt_commands_without_connection_report_errors(bleak_adapter, events):
    bleak_adapter.discover_services("AA:BB", [SERVICE_UUID])
    bleak_adapter.discover_characteristics("AA:BB", SERVICE_UUID)
    bleak_adapter.subscribe("AA:BB", FORCE_CHAR)

    assert events == [
        ServicesDiscovered("AA:BB", error="Not connected"),
        CharacteristicsDiscovered("AA:BB", SERVICE_UUID, error="Not connected"),
        NotificationStateChanged("AA:BB", FORCE_CHAR, "Not connected"),
    ]
