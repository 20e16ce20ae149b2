"""Fake telemetry for UI prototyping.

Pushes one uniformly random value per driven channel into the telemetry
buffer every ``interval`` seconds, so the charts can be exercised without a
mallet. Values go through ``TelemetryBuffer.push`` exactly like decoded BLE
samples; the horizontal position is the generator's own tick counter.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Iterable, Optional

from .telemetry import Channel, TelemetryBuffer

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = (Channel.X, Channel.Y, Channel.Z)


class FakeTelemetryGenerator:
    """Periodic random-sample producer bound to an asyncio loop.

    Args:
        buffer: Destination telemetry buffer.
        channels: Channels to drive. Defaults to the three acceleration axes.
        interval: Seconds between ticks.
        low: Lower bound of generated values.
        high: Upper bound of generated values.
        rng: Random source, injectable for reproducible runs.
    """

    def __init__(
        self,
        buffer: TelemetryBuffer,
        channels: Iterable[Channel] = DEFAULT_CHANNELS,
        *,
        interval: float = 1.0,
        low: float = 0.0,
        high: float = 100.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._buffer = buffer
        self._channels = tuple(channels)
        self._interval = interval
        self._low = low
        self._high = high
        self._rng = rng or random.Random()
        self._time = 0
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def time(self) -> int:
        """Number of ticks produced so far."""
        return self._time

    def tick(self) -> None:
        """Advance the time counter and push one value per channel."""
        self._time += 1
        for channel in self._channels:
            value = self._rng.uniform(self._low, self._high)
            self._buffer.push(channel, value, x=self._time)
        logger.debug("Fake telemetry tick %d", self._time)

    def start(self) -> None:
        """Start ticking on the running loop. No-op if already running."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Fake telemetry generator started (interval=%.1fs)", self._interval)

    def stop(self) -> None:
        """Cancel the timer task. Idempotent."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.info("Fake telemetry generator stopped after %d ticks", self._time)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.tick()
