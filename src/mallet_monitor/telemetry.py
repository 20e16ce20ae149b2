"""Rolling telemetry window for the mallet's four signal channels.

The buffer keeps, per channel, the most recent ``capacity`` samples (50 by
default) in arrival order. Appending beyond capacity drops the oldest sample
of that channel; nothing else ever removes a sample except ``clear()``.

Producers (the BLE session's callback context and the fake generator's timer)
and the consumer (the Dash render callback, running on a Flask worker thread)
touch the buffer from different threads. Every access goes through one
re-entrant lock and reads return copies, so a reader never sees a
half-appended or half-evicted series.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional


DEFAULT_CAPACITY = 50


class Channel(str, Enum):
    """Logical signal streams published by the mallet firmware."""

    X = "x"
    Y = "y"
    Z = "z"
    FORCE = "force"

    @property
    def label(self) -> str:
        return _CHANNEL_LABELS[self]


_CHANNEL_LABELS = {
    Channel.X: "X Acceleration",
    Channel.Y: "Y Acceleration",
    Channel.Z: "Z Acceleration",
    Channel.FORCE: "Force",
}


@dataclass(frozen=True)
class Sample:
    """One point of a telemetry series.

    Attributes:
        x: Position on the chart's horizontal axis. Either the fake
            generator's time counter or the channel's sequence index.
        value: Decoded sensor value.
    """

    x: float
    value: float


@dataclass
class ChannelStats:
    """Arrival statistics for one channel.

    ``sample_rate`` is the reciprocal of the interval between the two most
    recent pushes, so it reacts immediately when the stream stalls or resumes.
    """

    total: int = 0
    sample_rate: float = 0.0
    last_update: float = 0.0

    def update(self) -> None:
        current_time = time.time()
        if self.last_update > 0:
            time_diff = current_time - self.last_update
            if time_diff > 0:
                self.sample_rate = 1.0 / time_diff
        self.last_update = current_time
        self.total += 1


class TelemetryBuffer:
    """Thread-safe, per-channel fixed-capacity FIFO of samples.

    Args:
        capacity: Maximum samples kept per channel.
        channels: Channels to allocate series for. Pushing to a channel
            outside this set raises ``KeyError``.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        channels: Iterable[Channel] = tuple(Channel),
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._lock = threading.RLock()
        self._series: dict[Channel, deque[Sample]] = {
            channel: deque(maxlen=capacity) for channel in channels
        }
        self._stats: dict[Channel, ChannelStats] = {
            channel: ChannelStats() for channel in self._series
        }

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def channels(self) -> tuple[Channel, ...]:
        return tuple(self._series)

    def push(self, channel: Channel, value: float, x: Optional[float] = None) -> Sample:
        """Append ``value`` to ``channel``, evicting the oldest sample if full.

        Args:
            channel: Target series.
            value: Sample value.
            x: Horizontal position. Defaults to the channel's running sequence
                index (0 for the first sample ever pushed, then 1, 2, ...),
                which keeps increasing across evictions.

        Returns:
            The stored sample.
        """
        with self._lock:
            series = self._series[channel]
            stats = self._stats[channel]
            sample = Sample(x=float(stats.total if x is None else x), value=float(value))
            # deque(maxlen=...) drops the head on overflow
            series.append(sample)
            stats.update()
            return sample

    def snapshot(self, channel: Channel) -> list[Sample]:
        """Return a copy of ``channel``'s series, oldest first."""
        with self._lock:
            return list(self._series[channel])

    def snapshot_all(self) -> dict[Channel, list[Sample]]:
        """Return copies of every series taken under a single lock hold."""
        with self._lock:
            return {channel: list(series) for channel, series in self._series.items()}

    def points(self, channel: Channel) -> list[tuple[float, float]]:
        """Return ``channel`` as ``(x, y)`` pairs for line-chart rendering."""
        return [(sample.x, sample.value) for sample in self.snapshot(channel)]

    def size(self, channel: Channel) -> int:
        with self._lock:
            return len(self._series[channel])

    def stats(self, channel: Channel) -> ChannelStats:
        """Return a copy of ``channel``'s arrival statistics."""
        with self._lock:
            stats = self._stats[channel]
            return ChannelStats(
                total=stats.total,
                sample_rate=stats.sample_rate,
                last_update=stats.last_update,
            )

    def clear(self, channel: Optional[Channel] = None) -> None:
        """Reset one channel, or every channel when ``channel`` is None."""
        with self._lock:
            targets = [channel] if channel is not None else list(self._series)
            for target in targets:
                self._series[target].clear()
                self._stats[target] = ChannelStats()
