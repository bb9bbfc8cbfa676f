"""
Unit tests for the Load Driver (attacker).
"""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeBackend, make_workload

from cutbench.core.cancellation import RunSignal
from cutbench.core.errors import WorkloadUnstable
from cutbench.core.load_driver import LoadDriver
from cutbench.core.query_executor import QueryExecutor
from cutbench.models.workload import WorkloadRole

pytestmark = pytest.mark.asyncio


def _attacker(**kwargs):
    return make_workload(
        "ActiveCustomerCount",
        statement="SELECT count(*) FROM customers WHERE status = 'A'",
        role=WorkloadRole.ATTACKER,
        **kwargs,
    )


class TestIterationBudget:
    """Fixed total_iterations runs."""

    async def test_exact_iteration_count(self) -> None:
        """10000 iterations with no failures produce exactly 10000 results."""
        backend = FakeBackend()
        driver = LoadDriver(
            _attacker(total_iterations=10_000),
            QueryExecutor(backend),
            workers=50,
            default_timeout=1.0,
        )

        summary = await driver.run(RunSignal())

        assert len(driver.log) == 10_000
        assert summary.executions == 10_000
        assert summary.failures == 0
        assert summary.stopped_reason == "iterations_exhausted"
        assert sum(backend.calls.values()) == 10_000

    async def test_zero_iterations_runs_nothing(self) -> None:
        backend = FakeBackend()
        driver = LoadDriver(
            _attacker(total_iterations=0),
            QueryExecutor(backend),
            workers=4,
            default_timeout=1.0,
        )

        summary = await driver.run(RunSignal())

        assert summary.executions == 0
        assert backend.calls == {}

    async def test_override_replaces_workload_budget(self) -> None:
        driver = LoadDriver(
            _attacker(total_iterations=10_000),
            QueryExecutor(FakeBackend()),
            workers=5,
            default_timeout=1.0,
            total_iterations=25,
        )

        summary = await driver.run(RunSignal())

        assert summary.executions == 25

    async def test_concurrency_matches_worker_count(self) -> None:
        backend = FakeBackend(latency=0.01)
        driver = LoadDriver(
            _attacker(total_iterations=200),
            QueryExecutor(backend),
            workers=10,
            default_timeout=1.0,
        )

        await driver.run(RunSignal())

        assert backend.max_in_flight == 10


class TestStopping:
    """Duration, cancellation and instability."""

    async def test_cancellation_cuts_budget_short(self) -> None:
        """Results equal the iterations that started before cancellation."""
        backend = FakeBackend(latency=0.005)
        driver = LoadDriver(
            _attacker(total_iterations=1_000_000),
            QueryExecutor(backend),
            workers=4,
            default_timeout=1.0,
        )
        signal = RunSignal()

        async def cancel_soon() -> None:
            await asyncio.sleep(0.2)
            signal.fire("test")

        canceller = asyncio.create_task(cancel_soon())
        summary = await driver.run(signal)
        await canceller

        assert summary.stopped_reason == "cancelled: test"
        assert 0 < summary.executions < 1_000_000
        assert len(driver.log) == sum(backend.calls.values())

    async def test_duration_window(self) -> None:
        driver = LoadDriver(
            _attacker(),
            QueryExecutor(FakeBackend(latency=0.005)),
            workers=2,
            default_timeout=1.0,
        )

        loop = asyncio.get_running_loop()
        started = loop.time()
        summary = await driver.run(RunSignal(), duration_seconds=0.3)
        elapsed = loop.time() - started

        assert summary.stopped_reason == "duration_elapsed"
        assert 0.25 <= elapsed < 1.5
        assert summary.achieved_rate_per_second > 0

    async def test_unstable_workload_raises_with_partial_summary(self) -> None:
        """60% failures over a 50% threshold stop the driver."""
        workload = _attacker(total_iterations=100_000)
        backend = FakeBackend(failure_rates={workload.statement_template: 0.6})
        driver = LoadDriver(
            workload,
            QueryExecutor(backend),
            workers=5,
            default_timeout=1.0,
            failure_threshold=0.5,
            failure_min_executions=100,
        )

        with pytest.raises(WorkloadUnstable) as excinfo:
            await driver.run(RunSignal())

        assert excinfo.value.workload_name == "ActiveCustomerCount"
        assert excinfo.value.failure_rate > 0.5
        assert driver.summary is not None
        assert driver.summary.stopped_reason == "workload_unstable"
        assert 100 <= driver.summary.executions < 100_000
        assert len(driver.log) == driver.summary.executions

    async def test_failures_below_threshold_keep_running(self) -> None:
        workload = _attacker(total_iterations=500)
        backend = FakeBackend(failure_rates={workload.statement_template: 0.2})
        driver = LoadDriver(
            workload,
            QueryExecutor(backend),
            workers=5,
            default_timeout=1.0,
            failure_threshold=0.5,
        )

        summary = await driver.run(RunSignal())

        assert summary.executions == 500
        assert summary.failures == 100
        assert summary.failure_rate == pytest.approx(0.2)


class TestRate:
    """Requested vs achieved rate."""

    async def test_requested_rate_is_an_upper_bound(self) -> None:
        driver = LoadDriver(
            _attacker(),
            QueryExecutor(FakeBackend()),
            workers=4,
            default_timeout=1.0,
            target_rate_per_second=100.0,
        )

        summary = await driver.run(RunSignal(), duration_seconds=0.5)

        assert summary.requested_rate_per_second == 100.0
        assert summary.executions <= 60
        assert summary.achieved_rate_per_second <= 120.0

    async def test_slow_backend_reports_lower_achieved_rate(self) -> None:
        driver = LoadDriver(
            _attacker(),
            QueryExecutor(FakeBackend(latency=0.05)),
            workers=1,
            default_timeout=1.0,
            target_rate_per_second=1000.0,
        )

        summary = await driver.run(RunSignal(), duration_seconds=0.5)

        assert summary.achieved_rate_per_second < 100.0
        assert summary.requested_rate_per_second == 1000.0

    async def test_resource_exhaustion_warning(self) -> None:
        backend = FakeBackend(latency=0.3, max_connections=1)
        driver = LoadDriver(
            _attacker(timeout_seconds=0.01),
            QueryExecutor(backend, timeout_overhead_seconds=0.05),
            workers=4,
            default_timeout=1.0,
            resource_exhausted_warning_count=3,
            failure_threshold=1.0,
        )

        summary = await driver.run(RunSignal(), duration_seconds=0.5)

        assert any("shared pool" in w for w in summary.warnings)
