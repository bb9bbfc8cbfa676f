"""
Load Driver ("attacker")

Drives one workload from a pool of concurrent workers, each in a tight loop,
until the iteration budget is spent, the attack window closes or the run is
cancelled. A requested rate is only ever an upper bound: when the database
cannot keep up, workers simply run as fast as it answers, and the summary
reports the achieved rate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from cutbench.core.cancellation import RunSignal
from cutbench.core.errors import ErrorKind, WorkloadUnstable
from cutbench.core.query_executor import QueryExecutor
from cutbench.core.result_log import ResultLog
from cutbench.core.worker_pool import WorkerPool
from cutbench.models.results import ExecutionResult
from cutbench.models.workload import WorkloadDefinition

logger = logging.getLogger(__name__)


@dataclass
class LoadDriverSummary:
    """Outcome of one attacker run."""

    workload_name: str
    workers: int
    executions: int
    failures: int
    requested_rate_per_second: Optional[float]
    achieved_rate_per_second: float
    elapsed_seconds: float
    stopped_reason: str
    warnings: list[str] = field(default_factory=list)

    @property
    def failure_rate(self) -> float:
        if self.executions == 0:
            return 0.0
        return self.failures / self.executions


class LoadDriver:
    """High-frequency executor of a single workload."""

    def __init__(
        self,
        workload: WorkloadDefinition,
        executor: QueryExecutor,
        *,
        workers: int,
        default_timeout: float,
        total_iterations: Optional[int] = None,
        target_rate_per_second: Optional[float] = None,
        failure_threshold: float = 0.5,
        failure_min_executions: int = 100,
        resource_exhausted_warning_count: int = 50,
        drain_timeout_seconds: float = 30.0,
    ) -> None:
        """
        Args:
            workload: Attacker workload (owned exclusively by this driver)
            executor: Shared query executor
            workers: Number of concurrent worker loops
            default_timeout: Per-call timeout when the workload sets none
            total_iterations: Overrides the workload's iteration budget
            target_rate_per_second: Overrides the workload's requested rate
            failure_threshold: Failure rate (0-1) above which the run is unstable
            failure_min_executions: Executions needed before judging the rate
            resource_exhausted_warning_count: Consecutive pool exhaustions before warning
            drain_timeout_seconds: Max wait for workers to finish in-flight calls
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.workload = workload
        self.executor = executor
        self.workers = workers
        self.default_timeout = default_timeout
        self.total_iterations = (
            total_iterations if total_iterations is not None else workload.total_iterations
        )
        self.target_rate_per_second = (
            target_rate_per_second
            if target_rate_per_second is not None
            else workload.target_rate_per_second
        )
        self.failure_threshold = failure_threshold
        self.failure_min_executions = failure_min_executions
        self.resource_exhausted_warning_count = resource_exhausted_warning_count
        self.drain_timeout_seconds = drain_timeout_seconds

        self.log = ResultLog(owner=f"attacker:{workload.name}")
        self.warnings: list[str] = []
        self.summary: Optional[LoadDriverSummary] = None

        self._stop = asyncio.Event()
        self._stopped_reason: Optional[str] = None
        self._claimed = 0
        self._completed = 0
        self._exhausted_streak = 0
        self._unstable: Optional[WorkloadUnstable] = None
        self._next_progress_pct = 10

    @property
    def executions(self) -> int:
        return self._completed

    def _halt(self, reason: str) -> None:
        if not self._stop.is_set():
            self._stopped_reason = reason
            self._stop.set()

    def _claim_iteration(self) -> bool:
        """Reserve one execution from the global budget."""
        if self.total_iterations is not None and self._claimed >= self.total_iterations:
            self._halt("iterations_exhausted")
            return False
        self._claimed += 1
        return True

    def _record(self, result: ExecutionResult) -> None:
        self.log.append(result)
        self._completed += 1

        if result.error_kind == ErrorKind.RESOURCE_EXHAUSTED:
            self._exhausted_streak += 1
            if self._exhausted_streak == self.resource_exhausted_warning_count:
                msg = (
                    f"{self.workload.name}: {self._exhausted_streak} consecutive "
                    "executions could not get a connection from the shared pool"
                )
                logger.warning(msg)
                self.warnings.append(msg)
        else:
            self._exhausted_streak = 0

        if self.total_iterations:
            pct = 100 * self._completed // self.total_iterations
            if pct >= self._next_progress_pct:
                logger.info(
                    "Attacker progress: %d / %d (%d%%)",
                    self._completed,
                    self.total_iterations,
                    pct,
                )
                self._next_progress_pct = (pct // 10 + 1) * 10

        failures = self.log.failures
        if (
            self._unstable is None
            and self._completed >= self.failure_min_executions
            and failures / self._completed > self.failure_threshold
        ):
            self._unstable = WorkloadUnstable(
                self.workload.name,
                failures / self._completed,
                self.failure_threshold,
                self._completed,
            )
            logger.warning("%s; stopping attacker", self._unstable)
            self._halt("workload_unstable")

    async def _worker(self, worker_id: int, stop_signal: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        interval: Optional[float] = None
        if self.target_rate_per_second:
            interval = self.workers / self.target_rate_per_second
        next_due = loop.time() + (interval * worker_id / self.workers if interval else 0.0)

        logger.debug("Attacker worker %d started", worker_id)
        while not self._stop.is_set() and not stop_signal.is_set():
            if interval is not None:
                delay = next_due - loop.time()
                if delay > 0:
                    try:
                        await asyncio.wait_for(self._stop.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
                    if self._stop.is_set():
                        break
                # Behind schedule: run immediately, no catch-up burst.
                next_due = max(next_due + interval, loop.time())

            if not self._claim_iteration():
                break
            try:
                result = await self.executor.execute_workload(
                    self.workload, self.default_timeout
                )
            except Exception as e:
                # Not a query failure (those come back as results): the
                # workload itself is broken, e.g. its parameter generator.
                logger.exception("Attacker worker %d crashed: %s", worker_id, e)
                self._halt(f"worker_error: {type(e).__name__}")
                break
            self._record(result)
        logger.debug("Attacker worker %d stopped", worker_id)

    async def _watch(self, signal: RunSignal, duration_seconds: Optional[float]) -> None:
        if duration_seconds is None:
            await signal.wait()
            self._halt(f"cancelled: {signal.reason}")
            return
        if await signal.sleep(duration_seconds):
            self._halt(f"cancelled: {signal.reason}")
        else:
            self._halt("duration_elapsed")

    async def run(
        self,
        signal: RunSignal,
        *,
        duration_seconds: Optional[float] = None,
    ) -> LoadDriverSummary:
        """
        Run the attacker until budget, window or cancellation ends it.

        Raises:
            WorkloadUnstable: the failure rate crossed the threshold; ``summary``
                and ``log`` still hold the partial data
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        logger.info(
            "Starting attacker %s: workers=%d iterations=%s rate=%s",
            self.workload.name,
            self.workers,
            self.total_iterations,
            self.target_rate_per_second,
        )

        if self.total_iterations == 0:
            self._halt("iterations_exhausted")

        watcher = asyncio.create_task(self._watch(signal, duration_seconds))
        pool = WorkerPool(self._worker, name=f"attacker-{self.workload.name}")
        try:
            if not self._stop.is_set():
                await pool.spawn(self.workers)
                await self._stop.wait()
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            await pool.stop_all(timeout_seconds=self.drain_timeout_seconds)

        elapsed = max(loop.time() - started, 1e-9)
        self.summary = LoadDriverSummary(
            workload_name=self.workload.name,
            workers=self.workers,
            executions=self._completed,
            failures=self.log.failures,
            requested_rate_per_second=self.target_rate_per_second,
            achieved_rate_per_second=self._completed / elapsed,
            elapsed_seconds=elapsed,
            stopped_reason=self._stopped_reason or "stopped",
            warnings=list(self.warnings),
        )
        logger.info(
            "Attacker %s finished (%s): %d executions, %d failures, %.1f/s achieved",
            self.workload.name,
            self.summary.stopped_reason,
            self.summary.executions,
            self.summary.failures,
            self.summary.achieved_rate_per_second,
        )

        if self._unstable is not None:
            raise self._unstable
        return self.summary
