"""
Data models for CutBench.

This package contains:
- Workload definitions (attacker / victim query streams)
- Run records (execution results, metric samples, phase windows)
- Run configuration (pydantic)
- Comparison report (pydantic)
"""

from cutbench.models.workload import (
    ParameterGenerator,
    WorkloadDefinition,
    WorkloadRole,
    no_parameters,
)

from cutbench.models.results import (
    ExecutionResult,
    MetricSample,
    RunPhase,
    RunPhaseWindow,
    RunStatus,
    SampleGap,
)

from cutbench.models.config import HarnessConfig

from cutbench.models.report import (
    AttackerSummary,
    ComparisonReport,
    LatencyShift,
    MetricDelta,
    PhaseRecord,
    StatementStat,
    WorkloadRanking,
)

__all__ = [
    # workload
    "ParameterGenerator",
    "WorkloadDefinition",
    "WorkloadRole",
    "no_parameters",
    # results
    "ExecutionResult",
    "MetricSample",
    "RunPhase",
    "RunPhaseWindow",
    "RunStatus",
    "SampleGap",
    # config
    "HarnessConfig",
    # report
    "AttackerSummary",
    "ComparisonReport",
    "LatencyShift",
    "MetricDelta",
    "PhaseRecord",
    "StatementStat",
    "WorkloadRanking",
]
