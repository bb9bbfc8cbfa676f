"""
Run Record Models

Immutable records produced while a run is in progress: one ExecutionResult per
query execution, one MetricSample per sampler tick, one RunPhaseWindow per
orchestrator phase.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from cutbench.core.errors import ErrorKind


class RunPhase(str, Enum):
    """Orchestrator phases, in execution order."""

    SETUP = "SETUP"
    BASELINE = "BASELINE"
    RUNNING = "RUNNING"
    DRAINING = "DRAINING"
    POST_CAPTURE = "POST_CAPTURE"
    REPORTING = "REPORTING"
    DONE = "DONE"


class RunStatus(str, Enum):
    """Final label of a run."""

    COMPLETED = "COMPLETED"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of a single query execution."""

    workload_name: str
    start_time: datetime
    duration_micros: int
    succeeded: bool
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    rows: Optional[int] = None


@dataclass(frozen=True, slots=True)
class MetricSample:
    """Point-in-time contention counters (cumulative since boot where applicable)."""

    timestamp: datetime
    signal_wait_time_ms: float
    total_wait_time_ms: float
    runnable_task_count: int
    yield_count: int

    @property
    def signal_wait_pct(self) -> float:
        """Share of total wait spent waiting for a CPU."""
        if self.total_wait_time_ms <= 0:
            return 0.0
        return 100.0 * self.signal_wait_time_ms / self.total_wait_time_ms


@dataclass(frozen=True, slots=True)
class SampleGap:
    """A sampler tick that produced no sample."""

    timestamp: datetime
    reason: str


@dataclass(frozen=True, slots=True)
class RunPhaseWindow:
    """Wall-clock boundaries of one orchestrator phase."""

    phase_name: RunPhase
    start_time: datetime
    end_time: Optional[datetime] = None

    def contains(self, ts: datetime) -> bool:
        """True if ``ts`` falls inside the window (end exclusive, open if unfinished)."""
        if ts < self.start_time:
            return False
        return self.end_time is None or ts < self.end_time
