"""
Victim Runner ("mixed workload")

Launches calls from a weighted mix of workloads on a fixed tick. Each call is
started without waiting for the previous one: the cadence never reacts to
observed latency, so degradation shows up unthrottled in the results.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional, Sequence

from cutbench.core.cancellation import RunSignal
from cutbench.core.errors import ErrorKind
from cutbench.core.query_executor import QueryExecutor
from cutbench.core.result_log import ResultLog
from cutbench.models.workload import WorkloadDefinition

logger = logging.getLogger(__name__)


@dataclass
class VictimRunSummary:
    """Outcome of one victim window."""

    launched: dict[str, int]
    completed: int
    failures: int
    elapsed_seconds: float
    stopped_reason: str
    warnings: list[str] = field(default_factory=list)


class VictimRunner:
    """Scheduler loop over a weighted set of victim workloads."""

    def __init__(
        self,
        workloads: Sequence[WorkloadDefinition],
        executor: QueryExecutor,
        *,
        rate_per_second: float,
        default_timeout: float,
        failure_streak_warning: int = 5,
        seed: Optional[int] = None,
        drain_timeout_seconds: float = 30.0,
    ) -> None:
        """
        Args:
            workloads: Victim workloads, shared read-only
            executor: Shared query executor
            rate_per_second: Calls launched per second across all workloads
            default_timeout: Per-call timeout when a workload sets none
            failure_streak_warning: Consecutive failures of one workload before warning
            seed: Seed for weighted selection (reproducible mixes)
            drain_timeout_seconds: Max wait for in-flight calls at stop
        """
        if not workloads:
            raise ValueError("At least one victim workload is required")
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0")
        names = [w.name for w in workloads]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate victim workloads: {names}")

        self.workloads = tuple(workloads)
        self.executor = executor
        self.rate_per_second = rate_per_second
        self.default_timeout = default_timeout
        self.failure_streak_warning = failure_streak_warning
        self.drain_timeout_seconds = drain_timeout_seconds

        self.log = ResultLog(owner="victims")
        self.warnings: list[str] = []

        self._rng = random.Random(seed)
        self._launched: dict[str, int] = defaultdict(int)
        self._streaks: dict[str, int] = defaultdict(int)
        self._in_flight: set[asyncio.Task] = set()

    def select_next(self) -> Optional[WorkloadDefinition]:
        """
        Weighted-random pick among workloads with budget left.

        Returns:
            The next workload, or None once every budget is used
        """
        candidates = [
            w
            for w in self.workloads
            if w.total_iterations is None or self._launched[w.name] < w.total_iterations
        ]
        if not candidates:
            return None
        return self._rng.choices(candidates, weights=[w.weight for w in candidates])[0]

    async def _call(self, workload: WorkloadDefinition) -> None:
        try:
            result = await self.executor.execute_workload(workload, self.default_timeout)
        except Exception as e:
            logger.exception("Victim call %s crashed: %s", workload.name, e)
            return
        self.log.append(result)

        if result.succeeded:
            self._streaks[workload.name] = 0
            return

        logger.debug(
            "Victim %s failed (%s, %s) after %dus",
            workload.name,
            result.error_kind.value if result.error_kind else "?",
            result.error_detail,
            result.duration_micros,
        )
        self._streaks[workload.name] += 1
        if self._streaks[workload.name] == self.failure_streak_warning:
            hint = ""
            if result.error_kind == ErrorKind.RESOURCE_EXHAUSTED:
                hint = " (shared pool exhausted)"
            msg = (
                f"{workload.name}: {self.failure_streak_warning} consecutive failures, "
                f"last {result.error_detail}{hint}; continuing"
            )
            logger.warning(msg)
            self.warnings.append(msg)

    async def run(
        self,
        signal: RunSignal,
        *,
        duration_seconds: Optional[float] = None,
    ) -> VictimRunSummary:
        """
        Launch victim calls until the window closes, budgets run out or the
        run is cancelled. Iteration budgets apply per call of ``run``.
        """
        loop = asyncio.get_running_loop()
        interval = 1.0 / self.rate_per_second
        started = loop.time()
        deadline = started + duration_seconds if duration_seconds is not None else None
        before_completed = len(self.log)
        before_failures = self.log.failures
        self._launched = defaultdict(int)
        stopped_reason = "stopped"

        logger.info(
            "Starting victims %s at %.2f calls/s",
            [w.name for w in self.workloads],
            self.rate_per_second,
        )

        tick = 0
        try:
            while True:
                if signal.is_set():
                    stopped_reason = f"cancelled: {signal.reason}"
                    break
                now = loop.time()
                if deadline is not None and now >= deadline:
                    stopped_reason = "duration_elapsed"
                    break

                workload = self.select_next()
                if workload is None:
                    stopped_reason = "iterations_exhausted"
                    break
                self._launched[workload.name] += 1
                task = asyncio.create_task(self._call(workload))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)

                tick += 1
                next_tick = started + tick * interval
                now = loop.time()
                if next_tick < now:
                    # Skip ticks lost to event-loop lag instead of bursting.
                    tick = int((now - started) / interval) + 1
                    next_tick = started + tick * interval
                if deadline is not None:
                    next_tick = min(next_tick, deadline)
                await signal.sleep(next_tick - now)
        finally:
            await self._drain()

        summary = VictimRunSummary(
            launched=dict(self._launched),
            completed=len(self.log) - before_completed,
            failures=self.log.failures - before_failures,
            elapsed_seconds=loop.time() - started,
            stopped_reason=stopped_reason,
            warnings=list(self.warnings),
        )
        logger.info(
            "Victims finished (%s): %d calls, %d failures",
            summary.stopped_reason,
            summary.completed,
            summary.failures,
        )
        return summary

    async def _drain(self) -> None:
        pending = list(self._in_flight)
        if not pending:
            return
        done, still_pending = await asyncio.wait(pending, timeout=self.drain_timeout_seconds)
        if still_pending:
            logger.warning(
                "%d victim calls still running after %.1fs drain, cancelling",
                len(still_pending),
                self.drain_timeout_seconds,
            )
            for t in still_pending:
                t.cancel()
            await asyncio.gather(*still_pending, return_exceptions=True)
