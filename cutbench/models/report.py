"""
Comparison Report Models

Pydantic models for the read-only aggregate computed once at the end of a run.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from cutbench.models.results import RunStatus


class MetricDelta(BaseModel):
    """Baseline vs post-capture value of one contention metric."""

    metric: str
    baseline_value: float
    post_value: float
    delta: float
    percent_change: Optional[float] = Field(
        None, description="None when the baseline value is zero"
    )


class WorkloadRanking(BaseModel):
    """Aggregate cost of one workload over the attack window."""

    rank: int
    workload: str
    role: str
    count: int
    error_count: int
    total_duration_micros: int
    avg_duration_micros: float
    p50_duration_micros: Optional[float] = None
    p95_duration_micros: Optional[float] = None
    max_duration_micros: Optional[int] = None
    estimated_total_cpu_ms: float = Field(
        0.0, description="avg duration x count, in milliseconds"
    )
    high_frequency: bool = Field(
        False, description="Execution count above the high-frequency threshold"
    )


class LatencyShift(BaseModel):
    """Baseline-window vs attack-window behaviour of one workload."""

    workload: str
    baseline_count: int
    running_count: int
    baseline_avg_duration_micros: Optional[float] = None
    running_avg_duration_micros: Optional[float] = None
    baseline_total_duration_micros: int = 0
    running_total_duration_micros: int = 0
    count_change_pct: Optional[float] = None
    total_duration_change_pct: Optional[float] = None
    avg_duration_change_pct: Optional[float] = None
    latency_driven: bool = Field(
        False, description="Total time grew by a larger factor than call count"
    )


class AttackerSummary(BaseModel):
    """What the attacker actually achieved."""

    workload: str
    workers: int
    executions: int
    failures: int
    requested_rate_per_second: Optional[float] = None
    achieved_rate_per_second: float = 0.0
    elapsed_seconds: float = 0.0
    estimated_total_time_ms: float = Field(
        0.0, description="avg duration x executions"
    )
    stopped_reason: Optional[str] = None


class StatementStat(BaseModel):
    """Server-side statement cost between the baseline and post snapshots."""

    ranking: str = Field(..., description="by_total_time or by_calls")
    rank: int
    query: str
    calls: int
    total_exec_time_ms: float
    mean_exec_time_ms: float
    high_frequency: bool = False


class PhaseRecord(BaseModel):
    phase: str
    start_time: datetime
    end_time: Optional[datetime] = None


class ComparisonReport(BaseModel):
    """
    Baseline-vs-attack comparison.

    Every workload row keeps average and total duration side by side: a cheap
    call executed often can dominate aggregate time while looking harmless per
    call.
    """

    status: RunStatus
    flags: List[str] = Field(default_factory=list)
    generated_at: datetime
    phases: List[PhaseRecord] = Field(default_factory=list)
    metric_deltas: List[MetricDelta] = Field(default_factory=list)
    workload_rankings: List[WorkloadRanking] = Field(default_factory=list)
    latency_shifts: List[LatencyShift] = Field(default_factory=list)
    attacker: Optional[AttackerSummary] = None
    top_statements: List[StatementStat] = Field(default_factory=list)
    sample_count: int = 0
    unsampled_intervals: int = 0
    warnings: List[str] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)

    def high_frequency_candidates(self) -> List[str]:
        """Workloads flagged as likely root causes."""
        return [r.workload for r in self.workload_rankings if r.high_frequency]
