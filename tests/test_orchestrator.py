"""
Unit tests for RunOrchestrator, driving full runs against in-process fakes.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from fakes import FakeBackend, FakeMetricSource, make_workload

from cutbench.core.errors import MissingBaseline, SetupFailure
from cutbench.core.orchestrator import (
    FLAG_CANCELLED,
    FLAG_WORKLOAD_UNSTABLE,
    RunOrchestrator,
)
from cutbench.core.pg_stats import PgStatSnapshot
from cutbench.core.query_executor import QueryExecutor
from cutbench.core.workload_catalog import WorkloadCatalog
from cutbench.models.config import HarnessConfig
from cutbench.models.results import RunPhase, RunStatus
from cutbench.models.workload import WorkloadRole

pytestmark = pytest.mark.asyncio

ATTACK_SQL = "SELECT count(*) FROM customers WHERE status = 'A'"
SUMMARY_SQL = "SELECT order_summary"
ORDERS_SQL = "SELECT customer_orders"


def _catalog() -> WorkloadCatalog:
    return WorkloadCatalog(
        [
            make_workload(
                "ActiveCustomerCount",
                statement=ATTACK_SQL,
                role=WorkloadRole.ATTACKER,
                requires_tables=("customers",),
            ),
            make_workload("OrderSummary", statement=SUMMARY_SQL, requires_tables=("orders",)),
            make_workload("CustomerOrders", statement=ORDERS_SQL),
        ]
    )


def _config(**overrides) -> HarnessConfig:
    values = dict(
        attacker="ActiveCustomerCount",
        victims=["OrderSummary", "CustomerOrders"],
        duration_seconds=0.6,
        sample_interval_seconds=0.1,
        baseline_seconds=0.2,
        attacker_workers=4,
        victim_rate_per_second=20.0,
        query_timeout_seconds=1.0,
        seed=1,
    )
    values.update(overrides)
    return HarnessConfig(**values)


def _orchestrator(backend=None, source=None, **config) -> RunOrchestrator:
    return RunOrchestrator(
        _config(**config),
        _catalog(),
        QueryExecutor(backend or FakeBackend(latency=0.002), timeout_overhead_seconds=0.05),
        source or FakeMetricSource(),
    )


class TestPhases:
    """Phase sequencing."""

    async def test_full_run_phase_order(self) -> None:
        orchestrator = _orchestrator()

        outcome = await orchestrator.run()

        assert orchestrator.phase == RunPhase.DONE
        assert orchestrator.phase_history() == [
            RunPhase.SETUP,
            RunPhase.BASELINE,
            RunPhase.RUNNING,
            RunPhase.DRAINING,
            RunPhase.POST_CAPTURE,
            RunPhase.REPORTING,
        ]
        assert all(w.end_time is not None for w in orchestrator.windows)
        starts = [w.start_time for w in orchestrator.windows]
        assert starts == sorted(starts)
        assert outcome.status == RunStatus.COMPLETED
        assert outcome.report.flags == []

    async def test_report_contents(self) -> None:
        source = FakeMetricSource(signal_wait_start=100.0, signal_wait_step=10.0)
        orchestrator = _orchestrator(source=source)

        outcome = await orchestrator.run()
        report = outcome.report

        row = next(r for r in report.metric_deltas if r.metric == "signal_wait_time_ms")
        assert row.baseline_value == 100.0
        assert row.post_value > row.baseline_value
        assert report.workload_rankings[0].workload == "ActiveCustomerCount"
        assert report.attacker.executions > 0
        assert {r.workload for r in report.workload_rankings} >= {"ActiveCustomerCount"}
        assert source.closed is True

    async def test_sample_count_tracks_duration(self) -> None:
        """Samples collected = duration / interval, +/- 1."""
        orchestrator = _orchestrator(duration_seconds=1.0, sample_interval_seconds=0.1)

        outcome = await orchestrator.run()

        assert 9 <= outcome.report.sample_count <= 11
        assert outcome.report.sample_count == len(orchestrator._sampler.samples)

        running = next(w for w in orchestrator.windows if w.phase_name == RunPhase.RUNNING)
        in_running = [
            s for s in orchestrator._sampler.samples if running.contains(s.timestamp)
        ]
        assert 9 <= len(in_running) <= 11

    async def test_baseline_window_runs_victims_alone(self) -> None:
        backend = FakeBackend(latency=0.002)
        orchestrator = _orchestrator(backend=backend, baseline_seconds=0.3)

        outcome = await orchestrator.run()

        baseline = next(w for w in orchestrator.windows if w.phase_name == RunPhase.BASELINE)
        attacker_in_baseline = [
            r for r in orchestrator._driver.log if baseline.contains(r.start_time)
        ]
        assert attacker_in_baseline == []
        assert len(outcome.victims) == 2
        assert outcome.report.latency_shifts
        assert any(s.baseline_count > 0 for s in outcome.report.latency_shifts)

    async def test_baseline_window_is_on_by_default(self) -> None:
        config = HarnessConfig(
            attacker="ActiveCustomerCount",
            victims=["OrderSummary"],
            duration_seconds=1.0,
            sample_interval_seconds=0.1,
        )
        assert config.baseline_seconds > 0

    async def test_no_baseline_window_warns(self) -> None:
        outcome = await _orchestrator(baseline_seconds=0).run()

        assert outcome.status == RunStatus.COMPLETED
        assert any("latency shifts are unavailable" in w for w in outcome.report.warnings)
        assert all(s.baseline_count == 0 for s in outcome.report.latency_shifts)

    async def test_attacker_and_victims_share_the_bounded_pool(self) -> None:
        backend = FakeBackend(latency=0.01, max_connections=3)
        orchestrator = _orchestrator(backend=backend)

        outcome = await orchestrator.run()

        assert backend.max_in_flight <= 3
        assert any(
            ATTACK_SQL in busy and (SUMMARY_SQL in busy or ORDERS_SQL in busy)
            for busy in backend.overlaps
        )
        assert outcome.report.attacker.executions > 0

    async def test_attacker_budget_ends_running_early(self) -> None:
        orchestrator = _orchestrator(duration_seconds=30.0, attacker_iterations=50)

        loop = asyncio.get_running_loop()
        started = loop.time()
        outcome = await orchestrator.run()

        assert loop.time() - started < 5.0
        assert outcome.attacker.executions == 50
        assert outcome.attacker.stopped_reason == "iterations_exhausted"


class TestSetupFailures:
    """Problems detected before anything runs."""

    async def test_zero_sample_interval(self) -> None:
        orchestrator = _orchestrator(sample_interval_seconds=0)
        with pytest.raises(SetupFailure, match="sample_interval"):
            await orchestrator.run()
        assert orchestrator.status == RunStatus.FAILED
        assert orchestrator.phase == RunPhase.SETUP

    async def test_zero_duration(self) -> None:
        with pytest.raises(SetupFailure, match="duration"):
            await _orchestrator(duration_seconds=0).run()

    async def test_unknown_workload(self) -> None:
        with pytest.raises(SetupFailure, match="Unknown workload"):
            await _orchestrator(victims=["Nope"]).run()

    async def test_attacker_listed_as_victim(self) -> None:
        with pytest.raises(SetupFailure):
            await _orchestrator(victims=["ActiveCustomerCount"]).run()

    async def test_unreachable_database(self) -> None:
        backend = FakeBackend(ping_error=OSError("connection refused"))
        with pytest.raises(SetupFailure, match="unreachable"):
            await _orchestrator(backend=backend).run()

    async def test_missing_tables(self) -> None:
        backend = FakeBackend(missing={"orders"})
        with pytest.raises(SetupFailure, match="orders"):
            await _orchestrator(backend=backend).run()

    async def test_metric_source_unavailable(self) -> None:
        source = FakeMetricSource(probe_error=RuntimeError("no /proc"))
        with pytest.raises(SetupFailure, match="Metric source"):
            await _orchestrator(source=source).run()
        assert source.closed is True


class TestDegradedRuns:
    """Runs that still produce a report."""

    async def test_unstable_attacker_degrades_run(self) -> None:
        """60% attacker failures over a 50% threshold."""
        backend = FakeBackend(latency=0.001, failure_rates={ATTACK_SQL: 0.6})
        orchestrator = _orchestrator(
            backend=backend,
            duration_seconds=5.0,
            failure_threshold=0.5,
            failure_min_executions=100,
        )

        outcome = await orchestrator.run()

        assert outcome.status == RunStatus.DEGRADED
        assert FLAG_WORKLOAD_UNSTABLE in outcome.report.flags
        assert outcome.report.workload_rankings
        assert outcome.report.metric_deltas
        assert any("unstable" in w for w in outcome.report.warnings)
        assert RunPhase.DRAINING in orchestrator.phase_history()

    async def test_cancel_degrades_run(self) -> None:
        orchestrator = _orchestrator(duration_seconds=30.0)

        async def cancel_soon() -> None:
            await asyncio.sleep(0.3)
            orchestrator.request_cancel("test interrupt")

        canceller = asyncio.create_task(cancel_soon())
        outcome = await orchestrator.run()
        await canceller

        assert outcome.status == RunStatus.DEGRADED
        assert FLAG_CANCELLED in outcome.report.flags
        assert outcome.report.config["cancel_reason"] == "test interrupt"

    async def test_victim_failures_only_warn(self) -> None:
        backend = FakeBackend(latency=0.001, failure_rates={SUMMARY_SQL: 1.0})
        orchestrator = _orchestrator(backend=backend, victims=["OrderSummary"])

        outcome = await orchestrator.run()

        assert outcome.status == RunStatus.COMPLETED
        assert any("OrderSummary" in w for w in outcome.report.warnings)


class TestMissingBaseline:
    async def test_failed_baseline_sample(self) -> None:
        # Read 1 is tick 0, the baseline sample.
        source = FakeMetricSource(fail_reads={1})
        orchestrator = _orchestrator(source=source, sample_interval_seconds=10.0)

        with pytest.raises(MissingBaseline):
            await orchestrator.run()
        assert orchestrator.status == RunStatus.FAILED


class _StaticStats:
    def __init__(self) -> None:
        self.snapshots = 0

    async def snapshot(self) -> PgStatSnapshot:
        self.snapshots += 1
        calls = 0 if self.snapshots == 1 else 200_000
        return PgStatSnapshot(
            timestamp=datetime.now(UTC),
            available=True,
            stats={
                1: {
                    "query": ATTACK_SQL,
                    "calls": calls,
                    "total_exec_time": calls * 0.25,
                    "rows": calls,
                    "shared_blks_hit": 0,
                    "shared_blks_read": 0,
                }
            },
        )


class TestStatementStats:
    async def test_top_statements_in_report(self) -> None:
        stats = _StaticStats()
        orchestrator = RunOrchestrator(
            _config(high_frequency_threshold=100_000),
            _catalog(),
            QueryExecutor(FakeBackend(latency=0.002)),
            FakeMetricSource(),
            stats_provider=stats,
        )

        outcome = await orchestrator.run()

        assert stats.snapshots == 2
        by_calls = [s for s in outcome.report.top_statements if s.ranking == "by_calls"]
        assert by_calls[0].calls == 200_000
        assert by_calls[0].high_frequency is True
