"""
Unit tests for MetricSampler.
"""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeMetricSource

from cutbench.core.metric_sampler import MetricSampler, SamplerState

pytestmark = pytest.mark.asyncio


class TestLifecycle:
    """State machine IDLE -> SAMPLING -> STOPPED."""

    async def test_interval_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            MetricSampler(FakeMetricSource(), 0)

    async def test_capture_before_start_is_rejected(self) -> None:
        sampler = MetricSampler(FakeMetricSource(), 0.1)
        assert sampler.state == SamplerState.IDLE
        with pytest.raises(RuntimeError):
            await sampler.capture()
        with pytest.raises(RuntimeError):
            await sampler.stop()

    async def test_cannot_restart(self) -> None:
        sampler = MetricSampler(FakeMetricSource(), 0.1)
        await sampler.start()
        await sampler.stop()
        assert sampler.state == SamplerState.STOPPED
        with pytest.raises(RuntimeError):
            await sampler.start()

    async def test_start_takes_tick_zero(self) -> None:
        source = FakeMetricSource(signal_wait_start=100.0)
        sampler = MetricSampler(source, 10.0)

        first = await sampler.start()

        assert first is not None
        assert first.signal_wait_time_ms == 100.0
        assert sampler.samples == [first]
        await sampler.stop()

    async def test_stop_takes_final_sample(self) -> None:
        source = FakeMetricSource()
        sampler = MetricSampler(source, 10.0)
        first = await sampler.start()

        final = await sampler.stop()

        assert final is not None
        assert sampler.samples == [first, final]

    async def test_close_releases_source(self) -> None:
        source = FakeMetricSource()
        sampler = MetricSampler(source, 0.05)
        await sampler.start()

        await sampler.close()

        assert source.closed is True
        assert sampler.state == SamplerState.STOPPED


class TestSampling:
    """Interval behaviour."""

    async def test_sample_count_tracks_duration(self) -> None:
        """Samples over a span = span / interval, +/- 1."""
        sampler = MetricSampler(FakeMetricSource(), 0.1)
        await sampler.start()
        await asyncio.sleep(1.0)
        await sampler.stop()

        assert 9 <= len(sampler.samples) <= 11

    async def test_final_sample_replaces_latest_tick(self) -> None:
        source = FakeMetricSource()
        sampler = MetricSampler(source, 0.1)
        first = await sampler.start()
        await asyncio.sleep(0.13)

        final = await sampler.stop()

        # Reads: tick 0, tick 1 at 0.1s, final.
        assert source.reads == 3
        assert sampler.samples == [first, final]

    async def test_final_sample_keeps_captured_sample(self) -> None:
        sampler = MetricSampler(FakeMetricSource(), 10.0)
        await sampler.start()
        captured = await sampler.capture()

        final = await sampler.stop()

        assert sampler.samples[1:] == [captured, final]

    async def test_timestamps_strictly_increase(self) -> None:
        sampler = MetricSampler(FakeMetricSource(), 0.01)
        await sampler.start()
        await sampler.capture()
        await asyncio.sleep(0.2)
        await sampler.capture()
        await sampler.stop()

        stamps = [s.timestamp for s in sampler.samples]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    async def test_failed_read_becomes_gap(self) -> None:
        """A failed tick is recorded as a gap, not retried."""
        source = FakeMetricSource(fail_reads={2})
        sampler = MetricSampler(source, 0.05)
        await sampler.start()
        await asyncio.sleep(0.23)
        await sampler.stop()

        assert len(sampler.gaps) == 1
        assert "read 2 failed" in sampler.gaps[0].reason
        assert len(sampler.samples) < source.reads

    async def test_slow_read_times_out_as_gap(self) -> None:
        source = FakeMetricSource(read_delay=0.5)
        sampler = MetricSampler(source, 10.0, read_timeout_seconds=0.02)

        first = await sampler.start()
        sample = await sampler.capture()
        final = await sampler.stop()

        assert first is None
        assert sample is None
        assert final is None
        assert len(sampler.gaps) == 3
        assert sampler.samples == []
        assert sampler.state == SamplerState.STOPPED

    async def test_signal_wait_pct(self) -> None:
        sampler = MetricSampler(
            FakeMetricSource(signal_wait_start=250.0, total_wait_start=1000.0), 10.0
        )
        sample = await sampler.start()
        await sampler.stop()

        assert sample.signal_wait_pct == pytest.approx(25.0)
