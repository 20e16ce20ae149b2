"""What the dashboard renders, decoupled from where it comes from."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..session import ConnectionState, SessionStatus
from ..telemetry import Channel, TelemetryBuffer


@dataclass(frozen=True)
class DisplaySnapshot:
    """One frame of dashboard input.

    Attributes:
        series: Per channel, ``(x, y)`` points oldest first.
        rates: Per channel, most recent arrival rate in Hz.
        candidates: ``(identifier, display name)`` pairs for the picker.
        connected: Whether a mallet is currently connected.
        status: Full session status for the status panel.
    """

    series: dict[Channel, list[tuple[float, float]]] = field(default_factory=dict)
    rates: dict[Channel, float] = field(default_factory=dict)
    candidates: list[tuple[str, str]] = field(default_factory=list)
    connected: bool = False
    status: SessionStatus = field(default_factory=SessionStatus)


def build_snapshot(buffer: TelemetryBuffer, status: SessionStatus) -> DisplaySnapshot:
    samples = buffer.snapshot_all()
    return DisplaySnapshot(
        series={
            channel: [(s.x, s.value) for s in series] for channel, series in samples.items()
        },
        rates={channel: buffer.stats(channel).sample_rate for channel in samples},
        candidates=[(p.identifier, p.display_name) for p in status.candidates],
        connected=status.is_connected,
        status=status,
    )


_STATE_TEXT = {
    ConnectionState.IDLE: ("⚪ Not connected", "gray"),
    ConnectionState.SCANNING: ("🟡 Scanning...", "orange"),
    ConnectionState.CONNECTING: ("🟡 Connecting...", "orange"),
    ConnectionState.CONNECTED: ("🟢 Connected", "green"),
    ConnectionState.RECONNECTING: ("🟡 Reconnecting...", "orange"),
    ConnectionState.DISCONNECTED: ("🔴 Disconnected", "red"),
    ConnectionState.GAVE_UP: ("🔴 Connection lost", "red"),
}


def describe_status(status: SessionStatus) -> tuple[str, str]:
    """Return the status headline and its color."""
    if not status.adapter_state.available:
        return f"🔴 Bluetooth {status.adapter_state.value}", "red"
    return _STATE_TEXT[status.connection_state]
