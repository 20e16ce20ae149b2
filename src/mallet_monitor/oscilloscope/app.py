"""
Dash application for the mallet telemetry dashboard.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

import dash  # type: ignore
from dash import dcc, html, Input, Output, State

from ..errors import MalletMonitorError
from ..runtime import MonitorRuntime
from ..session import ConnectionState, DiscoveryPolicy
from .plots import create_channel_layout
from .view_model import build_snapshot, describe_status

logger = logging.getLogger(__name__)

PANEL_STYLE = {
    "display": "inline-block",
    "verticalAlign": "top",
    "padding": "10px",
    "border": "1px solid #ddd",
    "borderRadius": "5px",
    "margin": "5px",
}

BUTTON_STYLE = {
    "marginRight": "10px",
    "padding": "8px 16px",
    "color": "white",
    "border": "none",
    "borderRadius": "4px",
}

# States in which the Connect button would only restart work already underway
_BUSY_STATES = {
    ConnectionState.SCANNING,
    ConnectionState.CONNECTING,
    ConnectionState.CONNECTED,
    ConnectionState.RECONNECTING,
}


def button_style(enabled: bool, color: str) -> dict[str, str]:
    return {
        **BUTTON_STYLE,
        "backgroundColor": color if enabled else "#6c757d",
        "cursor": "pointer" if enabled else "not-allowed",
        "opacity": "1.0" if enabled else "0.6",
    }


class OscilloscopeApp:
    """Live dashboard for one mallet session.

    The page shows a Connect button, the session status, a device picker
    (manual-select policy only), the session's activity log and a 2x2 grid of
    line charts fed from the telemetry buffer. A ``dcc.Interval`` re-renders
    everything at ``update_rate`` frames per second from snapshots, so the
    render path never touches session internals.

    Button clicks are forwarded to the runtime, which marshals them onto the
    session's own loop.

    Attributes:
        runtime: Owner of the session thread and telemetry buffer.
        update_interval: UI refresh interval in milliseconds.
        app: Dash application instance.
    """

    def __init__(self, runtime: MonitorRuntime, update_rate: int = 5):
        self.runtime = runtime
        self.update_interval = 1000 // max(1, update_rate)
        self.manual_select = runtime.config.policy is DiscoveryPolicy.MANUAL_SELECT

        self.app = dash.Dash(__name__)
        self._setup_layout()
        self._setup_callbacks()

    def _setup_layout(self) -> None:
        device_panel_style = {**PANEL_STYLE, "width": "30%"}
        if not self.manual_select:
            device_panel_style["display"] = "none"

        self.app.layout = html.Div(
            [
                html.H1("Polo Tech Test App", style={"textAlign": "center"}),
                html.Div(
                    [
                        html.Div(
                            [
                                html.H3("Connection"),
                                html.Button(
                                    "Connect to Arduino via BT",
                                    id="connect-btn",
                                    style=button_style(True, "#007bff"),
                                ),
                                html.Div(
                                    id="connection-status",
                                    children="Initializing...",
                                    style={"marginTop": "10px"},
                                ),
                                html.Div(id="connection-details", children=""),
                                html.Div(
                                    id="command-feedback",
                                    children="",
                                    style={"color": "#dc3545", "fontSize": "12px"},
                                ),
                            ],
                            style={**PANEL_STYLE, "width": "30%"},
                        ),
                        html.Div(
                            [
                                html.H3("Devices"),
                                dcc.Dropdown(
                                    id="device-dropdown",
                                    options=[],
                                    placeholder="Press Connect to scan...",
                                    style={"marginBottom": "10px", "fontSize": "12px"},
                                ),
                                html.Button(
                                    "Connect to selected",
                                    id="select-device-btn",
                                    style=button_style(True, "#28a745"),
                                ),
                            ],
                            style=device_panel_style,
                        ),
                        html.Div(
                            [
                                html.H3("Activity"),
                                html.Div(
                                    id="activity-log",
                                    style={
                                        "maxHeight": "180px",
                                        "overflowY": "auto",
                                        "fontSize": "12px",
                                        "color": "gray",
                                    },
                                ),
                            ],
                            style={**PANEL_STYLE, "width": "35%"},
                        ),
                    ],
                    style={"margin": "20px", "display": "flex", "gap": "10px"},
                ),
                html.Div(
                    [
                        dcc.Graph(
                            id="channel-plot",
                            config={"displayModeBar": True},
                            style={"height": "650px"},
                        ),
                    ]
                ),
                dcc.Interval(
                    id="interval-component",
                    interval=self.update_interval,
                    n_intervals=0,
                ),
            ]
        )

    def _setup_callbacks(self) -> None:
        """Register the periodic render callback and the two button callbacks."""

        @self.app.callback(  # type: ignore
            [
                Output("channel-plot", "figure"),
                Output("connection-status", "children"),
                Output("connection-details", "children"),
                Output("device-dropdown", "options"),
                Output("activity-log", "children"),
                Output("connect-btn", "disabled"),
                Output("connect-btn", "style"),
            ],
            [Input("interval-component", "n_intervals")],
        )
        def update_view(n_intervals: int) -> Tuple[Any, ...]:
            snapshot = build_snapshot(self.runtime.buffer, self.runtime.status)
            status = snapshot.status

            headline, color = describe_status(status)
            status_view = html.Span(
                headline,
                style={"color": color, "fontWeight": "bold", "fontSize": "16px"},
            )

            details = []
            if status.peripheral is not None:
                details.append(
                    f"🔵 Device: {status.peripheral.display_name} "
                    f"({status.peripheral.identifier})"
                )
            if status.reconnect_attempt:
                details.append(f"🔁 Reconnect attempt: {status.reconnect_attempt}")
            for channel, rate in snapshot.rates.items():
                if rate > 0:
                    details.append(f"⏱️ {channel.label}: {rate:.1f} Hz")
            if status.last_error:
                details.append(f"⚠️ {status.last_error}")
            details_view = html.Div(
                [
                    html.P(line, style={"margin": "5px 0", "fontSize": "14px"})
                    for line in details
                ]
            )

            options = [
                {"label": f"{name} ({identifier})", "value": identifier}
                for identifier, name in snapshot.candidates
            ]
            activity = [
                html.Div(line, style={"padding": "2px"})
                for line in reversed(status.activity)
            ]

            busy = status.connection_state in _BUSY_STATES
            if n_intervals % 50 == 0:
                logger.debug(
                    f"🔍 UI Debug: state={status.connection_state.value}, "
                    f"candidates={len(options)}, connected={snapshot.connected}"
                )

            return (
                create_channel_layout(snapshot.series),
                status_view,
                details_view,
                options,
                activity,
                busy,
                button_style(not busy, "#007bff"),
            )

        @self.app.callback(  # type: ignore
            Output("command-feedback", "children"),
            [Input("connect-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def on_connect(n_clicks: Optional[int]) -> str:
            if not n_clicks:
                return ""
            try:
                self.runtime.request_scan()
                logger.info("🔍 Scan requested from UI")
                return ""
            except MalletMonitorError as e:
                logger.error(f"❌ Failed to start scan: {e}")
                return str(e)

        @self.app.callback(  # type: ignore
            Output("command-feedback", "children", allow_duplicate=True),
            [Input("select-device-btn", "n_clicks")],
            [State("device-dropdown", "value")],
            prevent_initial_call=True,
        )
        def on_select(n_clicks: Optional[int], peripheral_id: Optional[str]) -> str:
            if not n_clicks:
                return ""
            if not peripheral_id:
                return "Select a device first"
            try:
                self.runtime.request_select(peripheral_id)
                logger.info(f"🔌 Connection to {peripheral_id} requested from UI")
                return ""
            except MalletMonitorError as e:
                logger.error(f"❌ Failed to connect to {peripheral_id}: {e}")
                return str(e)

    def run(
        self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False
    ) -> None:
        """Start the session runtime and serve the dashboard until interrupted.

        The runtime is stopped when the server returns, which releases the
        BLE connection, the reconnect timer and the fake generator.
        """
        self.runtime.start()
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.runtime.stop()


def create_app(runtime: MonitorRuntime, **kwargs: int) -> OscilloscopeApp:
    """Factory function to create the dashboard app.

    Args:
        runtime: Session runtime to display and control
        **kwargs: Additional arguments for OscilloscopeApp

    Returns:
        OscilloscopeApp instance
    """
    return OscilloscopeApp(runtime=runtime, **kwargs)
