"""
Plot components for the mallet telemetry charts.
"""

from __future__ import annotations

from typing import Sequence

import plotly.graph_objects as go  # type: ignore
from plotly.subplots import make_subplots  # type: ignore

from ..telemetry import Channel

CHANNEL_COLORS = {
    Channel.X: "red",
    Channel.Y: "green",
    Channel.Z: "blue",
    Channel.FORCE: "purple",
}

# Row/column of each channel in the 2x2 grid
CHANNEL_POSITIONS = {
    Channel.X: (1, 1),
    Channel.Y: (1, 2),
    Channel.Z: (2, 1),
    Channel.FORCE: (2, 2),
}


def padded_range(values: Sequence[float], min_padding: float = 1.0) -> list[float]:
    """Y-axis range around ``values`` with 10% (at least ``min_padding``) margin."""
    low, high = min(values), max(values)
    padding = max(min_padding, (high - low) * 0.1)
    return [low - padding, high + padding]


def create_channel_layout(
    series: dict[Channel, list[tuple[float, float]]],
) -> go.Figure:
    """Create a 2x2 subplot layout with X, Y, Z acceleration and force."""
    channels = list(CHANNEL_POSITIONS)
    fig = make_subplots(
        rows=2,
        cols=2,
        subplot_titles=tuple(channel.label for channel in channels),
        vertical_spacing=0.15,
        horizontal_spacing=0.10,
    )

    for channel in channels:
        row, col = CHANNEL_POSITIONS[channel]
        points = series.get(channel, [])
        if not points:
            fig.add_annotation(
                x=0.5,
                y=0.5,
                text="No data available",
                showarrow=False,
                xref="x domain",
                yref="y domain",
                font=dict(size=14, color="gray"),
                row=row,
                col=col,
            )
            continue

        xs = [x for x, _ in points]
        ys = [y for _, y in points]
        fig.add_trace(
            go.Scatter(
                x=xs,
                y=ys,
                mode="lines",
                name=channel.label,
                line=dict(color=CHANNEL_COLORS[channel], width=1.5),
            ),
            row=row,
            col=col,
        )
        if len(xs) > 1:
            fig.update_xaxes(range=[xs[0], xs[-1]], row=row, col=col)
        min_padding = 1.0 if channel is Channel.FORCE else 0.5
        fig.update_yaxes(range=padded_range(ys, min_padding), row=row, col=col)

    fig.update_xaxes(title_text="Sample", row=2)
    fig.update_yaxes(title_text="Acceleration (g)", row=1, col=1)
    fig.update_yaxes(title_text="Acceleration (g)", row=1, col=2)
    fig.update_yaxes(title_text="Acceleration (g)", row=2, col=1)
    fig.update_yaxes(title_text="Force", row=2, col=2)

    fig.update_layout(
        height=600,
        showlegend=True,
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
        margin=dict(l=50, r=50, t=80, b=50),
        uirevision="mallet",
    )
    return fig
