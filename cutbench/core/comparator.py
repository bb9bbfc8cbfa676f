"""
Comparator / Report Builder

Pure functions over the data recorded during a run. Nothing here reads a clock
or touches the database, so the same inputs always produce the same report.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from cutbench.core.errors import MissingBaseline
from cutbench.core.statistics import mean, percent_change, percentile
from cutbench.models.report import (
    AttackerSummary,
    ComparisonReport,
    LatencyShift,
    MetricDelta,
    PhaseRecord,
    StatementStat,
    WorkloadRanking,
)
from cutbench.models.results import (
    ExecutionResult,
    MetricSample,
    RunPhase,
    RunPhaseWindow,
    RunStatus,
    SampleGap,
)

logger = logging.getLogger(__name__)

TRACKED_METRICS = (
    "signal_wait_time_ms",
    "total_wait_time_ms",
    "runnable_task_count",
    "yield_count",
    "signal_wait_pct",
)


@dataclass
class RunContext:
    """Everything about a run the comparator needs besides samples and results."""

    status: RunStatus
    generated_at: datetime
    attacker_name: str
    victim_names: Sequence[str]
    high_frequency_threshold: int
    flags: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    attacker_workers: int = 0
    attacker_requested_rate: Optional[float] = None
    attacker_elapsed_seconds: float = 0.0
    attacker_stopped_reason: Optional[str] = None
    top_statements: list[StatementStat] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)


def _window(windows: Sequence[RunPhaseWindow], phase: RunPhase) -> Optional[RunPhaseWindow]:
    for w in windows:
        if w.phase_name == phase:
            return w
    return None


def last_sample_in(
    samples: Sequence[MetricSample], window: Optional[RunPhaseWindow]
) -> Optional[MetricSample]:
    """Latest sample whose timestamp falls inside ``window``."""
    if window is None:
        return None
    found: Optional[MetricSample] = None
    for s in samples:
        if window.contains(s.timestamp):
            found = s
    return found


def results_in(
    results: Iterable[ExecutionResult], window: Optional[RunPhaseWindow]
) -> list[ExecutionResult]:
    """Results that started inside ``window``."""
    if window is None:
        return []
    return [r for r in results if window.contains(r.start_time)]


def compute_metric_deltas(
    baseline: MetricSample, post: MetricSample
) -> list[MetricDelta]:
    rows: list[MetricDelta] = []
    for metric in TRACKED_METRICS:
        b = float(getattr(baseline, metric))
        p = float(getattr(post, metric))
        rows.append(
            MetricDelta(
                metric=metric,
                baseline_value=b,
                post_value=p,
                delta=p - b,
                percent_change=percent_change(b, p),
            )
        )
    return rows


def rank_workloads(
    results_by_workload: Mapping[str, Sequence[ExecutionResult]],
    running: Optional[RunPhaseWindow],
    *,
    attacker_name: str,
    high_frequency_threshold: int,
) -> list[WorkloadRanking]:
    """
    Rank workloads by total time spent over the Running window.

    Ties on total time are broken by count, then name, so ordering is stable.
    """
    rows: list[tuple[int, int, str, WorkloadRanking]] = []
    for name, results in results_by_workload.items():
        window_results = results_in(results, running)
        if not window_results:
            continue
        durations = sorted(r.duration_micros for r in window_results)
        count = len(durations)
        total = sum(durations)
        avg = total / count
        rows.append(
            (
                total,
                count,
                name,
                WorkloadRanking(
                    rank=0,
                    workload=name,
                    role="attacker" if name == attacker_name else "victim",
                    count=count,
                    error_count=sum(1 for r in window_results if not r.succeeded),
                    total_duration_micros=total,
                    avg_duration_micros=avg,
                    p50_duration_micros=percentile(durations, 50),
                    p95_duration_micros=percentile(durations, 95),
                    max_duration_micros=durations[-1],
                    estimated_total_cpu_ms=avg * count / 1000.0,
                    high_frequency=count > high_frequency_threshold,
                ),
            )
        )

    rows.sort(key=lambda t: (-t[0], -t[1], t[2]))
    ranked: list[WorkloadRanking] = []
    for rank, (_, _, _, row) in enumerate(rows, start=1):
        ranked.append(row.model_copy(update={"rank": rank}))
    return ranked


def compute_latency_shifts(
    results_by_workload: Mapping[str, Sequence[ExecutionResult]],
    baseline: Optional[RunPhaseWindow],
    running: Optional[RunPhaseWindow],
    victim_names: Sequence[str],
) -> list[LatencyShift]:
    """
    Baseline vs Running behaviour per victim.

    A workload is latency-driven when its total time grew by a larger factor
    than its call count: it got slower, not busier.
    """
    shifts: list[LatencyShift] = []
    for name in victim_names:
        results = results_by_workload.get(name, ())
        before = [r.duration_micros for r in results_in(results, baseline)]
        during = [r.duration_micros for r in results_in(results, running)]
        if not before and not during:
            continue

        b_total, r_total = sum(before), sum(during)
        b_avg, r_avg = mean(before), mean(during)
        latency_driven = False
        if before and during and b_total > 0:
            latency_driven = (r_total / b_total) > (len(during) / len(before))

        shifts.append(
            LatencyShift(
                workload=name,
                baseline_count=len(before),
                running_count=len(during),
                baseline_avg_duration_micros=b_avg,
                running_avg_duration_micros=r_avg,
                baseline_total_duration_micros=b_total,
                running_total_duration_micros=r_total,
                count_change_pct=percent_change(len(before), len(during)),
                total_duration_change_pct=percent_change(b_total, r_total),
                avg_duration_change_pct=(
                    percent_change(b_avg, r_avg)
                    if b_avg is not None and r_avg is not None
                    else None
                ),
                latency_driven=latency_driven,
            )
        )
    return shifts


def summarize_attacker(
    results: Sequence[ExecutionResult], context: RunContext
) -> AttackerSummary:
    """Achieved vs requested rate, and the cumulative cost ``avg x count``."""
    executions = len(results)
    avg_us = mean([r.duration_micros for r in results]) or 0.0
    elapsed = context.attacker_elapsed_seconds
    return AttackerSummary(
        workload=context.attacker_name,
        workers=context.attacker_workers,
        executions=executions,
        failures=sum(1 for r in results if not r.succeeded),
        requested_rate_per_second=context.attacker_requested_rate,
        achieved_rate_per_second=executions / elapsed if elapsed > 0 else 0.0,
        elapsed_seconds=elapsed,
        estimated_total_time_ms=avg_us * executions / 1000.0,
        stopped_reason=context.attacker_stopped_reason,
    )


def build_comparison_report(
    samples: Sequence[MetricSample],
    gaps: Sequence[SampleGap],
    windows: Sequence[RunPhaseWindow],
    results_by_workload: Mapping[str, Sequence[ExecutionResult]],
    context: RunContext,
) -> ComparisonReport:
    """
    Build the baseline-vs-post comparison.

    Raises:
        MissingBaseline: the Baseline or PostCapture window holds no sample
    """
    baseline_window = _window(windows, RunPhase.BASELINE)
    running_window = _window(windows, RunPhase.RUNNING)
    post_window = _window(windows, RunPhase.POST_CAPTURE)

    baseline = last_sample_in(samples, baseline_window)
    if baseline is None:
        raise MissingBaseline("No metric sample was captured in the Baseline window")
    post = last_sample_in(samples, post_window)
    if post is None:
        raise MissingBaseline("No metric sample was captured in the PostCapture window")

    attacker_results = results_in(
        results_by_workload.get(context.attacker_name, ()), running_window
    )

    report = ComparisonReport(
        status=context.status,
        flags=list(context.flags),
        generated_at=context.generated_at,
        phases=[
            PhaseRecord(
                phase=w.phase_name.value, start_time=w.start_time, end_time=w.end_time
            )
            for w in windows
        ],
        metric_deltas=compute_metric_deltas(baseline, post),
        workload_rankings=rank_workloads(
            results_by_workload,
            running_window,
            attacker_name=context.attacker_name,
            high_frequency_threshold=context.high_frequency_threshold,
        ),
        latency_shifts=compute_latency_shifts(
            results_by_workload, baseline_window, running_window, context.victim_names
        ),
        attacker=summarize_attacker(attacker_results, context),
        top_statements=list(context.top_statements),
        sample_count=len(samples),
        unsampled_intervals=len(gaps),
        warnings=list(context.warnings),
        config=dict(context.config),
    )
    logger.debug(
        "Built comparison report: %d metrics, %d workloads, %d shifts",
        len(report.metric_deltas),
        len(report.workload_rankings),
        len(report.latency_shifts),
    )
    return report
