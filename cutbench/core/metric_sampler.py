"""
Metric Sampler

Polls a contention source on its own fixed timer, independent of workload
activity. ``start()`` takes tick 0 and anchors the grid on it; later ticks sit
at ``start + k * interval``. A failed or missed tick becomes a gap rather than a
late retry, so sample spacing is never skewed by the contention being measured.
The final sample from ``stop()`` stands in for the most recent tick, so a
sampled span of ``D`` seconds yields about ``D / interval + 1`` samples.

State machine: IDLE -> SAMPLING -> STOPPED.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Optional

from cutbench.core.metric_sources import MetricSource
from cutbench.models.results import MetricSample, SampleGap

logger = logging.getLogger(__name__)


class SamplerState(str, Enum):
    IDLE = "IDLE"
    SAMPLING = "SAMPLING"
    STOPPED = "STOPPED"


class MetricSampler:
    """Interval sampler producing an append-only, time-ordered sample log."""

    def __init__(
        self,
        source: MetricSource,
        interval_seconds: float,
        *,
        read_timeout_seconds: Optional[float] = None,
    ) -> None:
        """
        Args:
            source: Where counters come from
            interval_seconds: Tick spacing (> 0)
            read_timeout_seconds: Max time for one read; defaults to the interval
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.source = source
        self.interval_seconds = interval_seconds
        self.read_timeout_seconds = read_timeout_seconds or interval_seconds

        self.samples: list[MetricSample] = []
        self.gaps: list[SampleGap] = []

        self._state = SamplerState.IDLE
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        # Latest timer sample and the loop time it was taken at.
        self._last_tick: Optional[tuple[MetricSample, float]] = None

    @property
    def state(self) -> SamplerState:
        return self._state

    async def start(self) -> Optional[MetricSample]:
        """
        IDLE -> SAMPLING: take tick 0 and start the interval timer from it.

        Returns:
            The tick 0 sample, or None if that read failed (recorded as a gap)
        """
        if self._state != SamplerState.IDLE:
            raise RuntimeError(f"Cannot start sampler in state {self._state.value}")
        self._state = SamplerState.SAMPLING
        started = asyncio.get_running_loop().time()
        first = await self._take()
        self._task = asyncio.create_task(self._tick_loop(started), name="metric-sampler")
        logger.info("Metric sampler started (interval=%.3fs)", self.interval_seconds)
        return first

    async def capture(self) -> Optional[MetricSample]:
        """Take an on-demand sample while SAMPLING, off the timer grid."""
        if self._state != SamplerState.SAMPLING:
            raise RuntimeError(f"Cannot capture in state {self._state.value}")
        self._last_tick = None
        return await self._take()

    async def stop(self) -> Optional[MetricSample]:
        """
        SAMPLING -> STOPPED: end the timer and take one final sample.

        The final sample replaces the latest timer tick if that tick is less
        than one interval old and nothing was sampled after it.
        """
        if self._state != SamplerState.SAMPLING:
            raise RuntimeError(f"Cannot stop sampler in state {self._state.value}")
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

        last_tick = self._last_tick
        now = asyncio.get_running_loop().time()
        final = await self._take()
        if (
            final is not None
            and last_tick is not None
            and now - last_tick[1] < self.interval_seconds
            and len(self.samples) >= 2
            and self.samples[-2] is last_tick[0]
        ):
            del self.samples[-2]
        self._state = SamplerState.STOPPED
        logger.info(
            "Metric sampler stopped: %d samples, %d gaps",
            len(self.samples),
            len(self.gaps),
        )
        return final

    async def close(self) -> None:
        """Release the source; stops the timer first if still running."""
        if self._state == SamplerState.SAMPLING:
            self._stop_event.set()
            if self._task is not None:
                await self._task
                self._task = None
            self._state = SamplerState.STOPPED
        await self.source.close()

    async def _tick_loop(self, started: float) -> None:
        loop = asyncio.get_running_loop()
        tick = 1
        while not self._stop_event.is_set():
            due = started + tick * self.interval_seconds
            delay = due - loop.time()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass
            sample = await self._take()
            self._last_tick = (sample, loop.time()) if sample is not None else None

            tick += 1
            behind = int((loop.time() - started) / self.interval_seconds) + 1
            if behind > tick:
                for _ in range(behind - tick):
                    self.gaps.append(
                        SampleGap(timestamp=datetime.now(UTC), reason="tick_overrun")
                    )
                logger.warning("Metric sampler skipped %d ticks", behind - tick)
                tick = behind

    async def _take(self) -> Optional[MetricSample]:
        try:
            counters = await asyncio.wait_for(
                self.source.read(), timeout=self.read_timeout_seconds
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            self.gaps.append(SampleGap(timestamp=datetime.now(UTC), reason=reason))
            logger.warning("Metric sample failed, recording gap: %s", reason)
            return None

        ts = datetime.now(UTC)
        if self.samples and ts <= self.samples[-1].timestamp:
            ts = self.samples[-1].timestamp + timedelta(microseconds=1)
        sample = MetricSample(
            timestamp=ts,
            signal_wait_time_ms=float(counters.signal_wait_time_ms),
            total_wait_time_ms=float(counters.total_wait_time_ms),
            runnable_task_count=int(counters.runnable_task_count),
            yield_count=int(counters.yield_count),
        )
        self.samples.append(sample)
        return sample
