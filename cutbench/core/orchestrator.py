"""
Run Orchestrator

Sequences one run through its phases and owns the cancellation signal shared
by every actor:

    SETUP -> BASELINE -> RUNNING -> DRAINING -> POST_CAPTURE -> REPORTING -> DONE

Each transition closes the previous RunPhaseWindow and opens the next; the
comparator later slices samples and results by these windows.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Optional

from cutbench.core.cancellation import RunSignal
from cutbench.core.comparator import RunContext, build_comparison_report
from cutbench.core.errors import MissingBaseline, SetupFailure, WorkloadUnstable
from cutbench.core.load_driver import LoadDriver, LoadDriverSummary
from cutbench.core.metric_sampler import MetricSampler
from cutbench.core.metric_sources import MetricSource
from cutbench.core.pg_stats import (
    PgStatSnapshot,
    StatementStatsProvider,
    statement_report,
)
from cutbench.core.query_executor import QueryExecutor
from cutbench.core.result_log import merge_by_workload
from cutbench.core.victim_runner import VictimRunner, VictimRunSummary
from cutbench.core.workload_catalog import WorkloadCatalog
from cutbench.models.config import HarnessConfig
from cutbench.models.report import ComparisonReport
from cutbench.models.results import RunPhase, RunPhaseWindow, RunStatus
from cutbench.models.workload import WorkloadDefinition

logger = logging.getLogger(__name__)

FLAG_WORKLOAD_UNSTABLE = "WORKLOAD_UNSTABLE"
FLAG_CANCELLED = "CANCELLED"


@dataclass
class RunOutcome:
    """What a finished run hands back to its caller."""

    status: RunStatus
    report: ComparisonReport
    attacker: Optional[LoadDriverSummary] = None
    victims: list[VictimRunSummary] = field(default_factory=list)


class RunOrchestrator:
    """Drives a single baseline / attack / post-capture run."""

    def __init__(
        self,
        config: HarnessConfig,
        catalog: WorkloadCatalog,
        executor: QueryExecutor,
        metric_source: MetricSource,
        *,
        stats_provider: Optional[StatementStatsProvider] = None,
        setup_timeout_seconds: float = 10.0,
    ) -> None:
        self.config = config
        self.catalog = catalog
        self.executor = executor
        self.metric_source = metric_source
        self.stats_provider = stats_provider
        self.setup_timeout_seconds = setup_timeout_seconds

        self.signal = RunSignal()
        self.windows: list[RunPhaseWindow] = []
        self.flags: list[str] = []
        self.warnings: list[str] = []
        self.status: Optional[RunStatus] = None

        self._phase: Optional[RunPhase] = None
        self._cancel_requested = False
        self._attacker: Optional[WorkloadDefinition] = None
        self._victims: list[WorkloadDefinition] = []
        self._sampler: Optional[MetricSampler] = None
        self._driver: Optional[LoadDriver] = None
        self._victim_runner: Optional[VictimRunner] = None
        self._victim_summaries: list[VictimRunSummary] = []
        self._victims_task: Optional[asyncio.Task] = None
        self._stats_before: Optional[PgStatSnapshot] = None
        self._stats_after: Optional[PgStatSnapshot] = None

    @property
    def phase(self) -> Optional[RunPhase]:
        return self._phase

    def phase_history(self) -> list[RunPhase]:
        return [w.phase_name for w in self.windows]

    def request_cancel(self, reason: str = "user interrupt") -> None:
        """Stop the run early; whatever was recorded is still reported."""
        if self.signal.is_set():
            return
        logger.warning("Cancellation requested: %s", reason)
        self._cancel_requested = True
        self._flag(FLAG_CANCELLED)
        self.signal.fire(reason)

    def _flag(self, flag: str) -> None:
        if flag not in self.flags:
            self.flags.append(flag)

    def _enter(self, phase: RunPhase) -> None:
        now = datetime.now(UTC)
        if self.windows and self.windows[-1].end_time is None:
            self.windows[-1] = replace(self.windows[-1], end_time=now)
        if phase != RunPhase.DONE:
            self.windows.append(RunPhaseWindow(phase_name=phase, start_time=now))
        self._phase = phase
        logger.info("Run phase: %s", phase.value)

    async def run(self) -> RunOutcome:
        """
        Execute every phase and build the report.

        Raises:
            SetupFailure: the run could not start
            MissingBaseline: no sample in the Baseline or PostCapture window
        """
        try:
            self._enter(RunPhase.SETUP)
            await self._setup()

            self._enter(RunPhase.BASELINE)
            await self._baseline()

            self._enter(RunPhase.RUNNING)
            attacker_summary = await self._running()

            self._enter(RunPhase.DRAINING)
            await self._draining()

            self._enter(RunPhase.POST_CAPTURE)
            await self._post_capture()

            self._enter(RunPhase.REPORTING)
            report = self._report(attacker_summary)

            self._enter(RunPhase.DONE)
        except (SetupFailure, MissingBaseline):
            self.status = RunStatus.FAILED
            raise
        finally:
            await self._cleanup()

        return RunOutcome(
            status=report.status,
            report=report,
            attacker=attacker_summary,
            victims=list(self._victim_summaries),
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _setup(self) -> None:
        cfg = self.config
        if cfg.sample_interval_seconds <= 0:
            raise SetupFailure(
                f"sample_interval_seconds must be > 0 (got {cfg.sample_interval_seconds})"
            )
        if cfg.duration_seconds <= 0:
            raise SetupFailure(f"duration_seconds must be > 0 (got {cfg.duration_seconds})")
        if not cfg.victims:
            raise SetupFailure("At least one victim workload is required")
        if cfg.attacker in cfg.victims:
            raise SetupFailure(
                f"{cfg.attacker!r} cannot be both the attacker and a victim"
            )

        try:
            self._attacker = self.catalog.get(cfg.attacker)
            self._victims = [self.catalog.get(name) for name in cfg.victims]
        except KeyError as e:
            raise SetupFailure(str(e.args[0]) if e.args else str(e)) from e

        try:
            await self.executor.ping(timeout=self.setup_timeout_seconds)
        except Exception as e:
            raise SetupFailure(f"Target database unreachable: {e}") from e

        missing_tables = getattr(self.executor.backend, "missing_tables", None)
        if missing_tables is not None:
            required: list[str] = []
            for w in [self._attacker, *self._victims]:
                for table in w.requires_tables:
                    if table not in required:
                        required.append(table)
            if required:
                try:
                    missing = await missing_tables(
                        required, timeout=self.setup_timeout_seconds
                    )
                except Exception as e:
                    raise SetupFailure(f"Could not check required tables: {e}") from e
                if missing:
                    raise SetupFailure(
                        f"Missing tables (bootstrap the schema first): {', '.join(missing)}"
                    )

        try:
            await self.metric_source.probe()
        except Exception as e:
            raise SetupFailure(f"Metric source unavailable: {e}") from e

        self._sampler = MetricSampler(self.metric_source, cfg.sample_interval_seconds)
        self._driver = LoadDriver(
            self._attacker,
            self.executor,
            workers=cfg.attacker_workers,
            default_timeout=cfg.query_timeout_seconds,
            total_iterations=cfg.attacker_iterations,
            target_rate_per_second=cfg.attacker_rate_per_second,
            failure_threshold=cfg.failure_threshold,
            failure_min_executions=cfg.failure_min_executions,
            resource_exhausted_warning_count=cfg.resource_exhausted_warning_count,
            drain_timeout_seconds=cfg.drain_timeout_seconds,
        )
        self._victim_runner = VictimRunner(
            self._victims,
            self.executor,
            rate_per_second=cfg.victim_rate_per_second,
            default_timeout=cfg.query_timeout_seconds,
            failure_streak_warning=cfg.victim_failure_streak_warning,
            seed=cfg.seed,
            drain_timeout_seconds=cfg.drain_timeout_seconds,
        )
        logger.info(
            "Setup complete: attacker=%s victims=%s duration=%.1fs interval=%.3fs",
            cfg.attacker,
            cfg.victims,
            cfg.duration_seconds,
            cfg.sample_interval_seconds,
        )

    async def _baseline(self) -> None:
        assert self._sampler is not None and self._victim_runner is not None

        if self.config.baseline_seconds > 0:
            if not self.signal.is_set():
                # Victims alone; the same signal ends the baseline on cancellation.
                summary = await self._victim_runner.run(
                    self.signal, duration_seconds=self.config.baseline_seconds
                )
                self._victim_summaries.append(summary)
        else:
            self.warnings.append(
                "No victim-only baseline window (baseline_seconds=0); "
                "latency shifts are unavailable"
            )

        if self.stats_provider is not None:
            self._stats_before = await self.stats_provider.snapshot()
        # Tick 0 of the sampling grid is the baseline sample.
        sample = await self._sampler.start()
        if sample is None:
            logger.warning("Baseline sample could not be captured")

    async def _running(self) -> Optional[LoadDriverSummary]:
        assert self._driver is not None and self._victim_runner is not None
        duration = self.config.duration_seconds

        victims_task = asyncio.create_task(
            self._victim_runner.run(self.signal, duration_seconds=duration),
            name="victims",
        )
        self._victims_task = victims_task
        try:
            summary = await self._driver.run(self.signal, duration_seconds=duration)
        except WorkloadUnstable as e:
            self._flag(FLAG_WORKLOAD_UNSTABLE)
            self.warnings.append(str(e))
            summary = self._driver.summary
        return summary

    async def _draining(self) -> None:
        # Attacker is done (budget, window, instability or cancellation):
        # end the Running window for everyone else too.
        self.signal.fire("running_complete")
        summary = await self._victims_task
        self._victim_summaries.append(summary)

    async def _post_capture(self) -> None:
        assert self._sampler is not None
        final = await self._sampler.stop()
        if final is None:
            logger.warning("Post-capture sample could not be captured")
        if self.stats_provider is not None:
            self._stats_after = await self.stats_provider.snapshot()

    def _report(self, attacker_summary: Optional[LoadDriverSummary]) -> ComparisonReport:
        assert self._sampler is not None and self._driver is not None
        assert self._victim_runner is not None

        self.status = RunStatus.DEGRADED if self.flags else RunStatus.COMPLETED

        statements, stats_warnings = statement_report(
            self._stats_before,
            self._stats_after,
            limit=self.config.top_statements,
            high_frequency_threshold=self.config.high_frequency_threshold,
        )
        warnings = list(self.warnings)
        for w in [*self._driver.warnings, *self._victim_runner.warnings, *stats_warnings]:
            if w not in warnings:
                warnings.append(w)
        if self._sampler.gaps:
            warnings.append(
                f"{len(self._sampler.gaps)} sample interval(s) could not be sampled"
            )

        context = RunContext(
            status=self.status,
            generated_at=datetime.now(UTC),
            attacker_name=self.config.attacker,
            victim_names=list(self.config.victims),
            high_frequency_threshold=self.config.high_frequency_threshold,
            flags=list(self.flags),
            warnings=warnings,
            attacker_workers=self._driver.workers,
            attacker_requested_rate=self._driver.target_rate_per_second,
            attacker_elapsed_seconds=(
                attacker_summary.elapsed_seconds if attacker_summary else 0.0
            ),
            attacker_stopped_reason=(
                attacker_summary.stopped_reason if attacker_summary else None
            ),
            top_statements=statements,
            config=self._config_snapshot(),
        )
        report = build_comparison_report(
            self._sampler.samples,
            self._sampler.gaps,
            self.windows,
            merge_by_workload([self._driver.log, self._victim_runner.log]),
            context,
        )
        logger.info(
            "Run %s: %d samples, %d workloads ranked, flags=%s",
            report.status.value,
            report.sample_count,
            len(report.workload_rankings),
            report.flags,
        )
        return report

    def _config_snapshot(self) -> dict[str, Any]:
        data = self.config.model_dump(mode="json")
        if self._cancel_requested:
            data["cancel_reason"] = self.signal.reason
        return data

    async def _cleanup(self) -> None:
        if not self.signal.is_set():
            self.signal.fire("run_finished")
        victims_task = self._victims_task
        if victims_task is not None and not victims_task.done():
            await asyncio.gather(victims_task, return_exceptions=True)
        if self._sampler is not None:
            await self._sampler.close()
        else:
            await self.metric_source.close()
