"""
Harness Run Configuration

Defines the pydantic model for a single run: which workloads play the
attacker and victim roles, how long each phase lasts, how often contention is
sampled and when sustained failures escalate.

``duration_seconds`` and ``sample_interval_seconds`` are deliberately not
range-constrained here: the orchestrator rejects bad values during its Setup
phase so they surface as ``SetupFailure`` rather than a parse error.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_BASELINE_SECONDS = 10.0


class HarnessConfig(BaseModel):
    """Parameters of one baseline / attack / post-capture run."""

    attacker: str = Field(..., description="Workload name driven at high frequency")
    victims: List[str] = Field(..., description="Workload names of the mixed traffic")

    # Phase timing
    duration_seconds: float = Field(..., description="Length of the attack window")
    sample_interval_seconds: float = Field(
        ..., description="Interval between contention samples"
    )
    baseline_seconds: float = Field(
        DEFAULT_BASELINE_SECONDS,
        ge=0,
        description="Victim-only window before the attack starts",
    )
    drain_timeout_seconds: float = Field(
        30.0, gt=0, description="Max wait for actors to finish in-flight calls"
    )

    # Attacker
    attacker_workers: int = Field(50, ge=1, le=10_000, description="Concurrent attacker workers")
    attacker_iterations: Optional[int] = Field(
        None, ge=0, description="Override the attacker's iteration budget"
    )
    attacker_rate_per_second: Optional[float] = Field(
        None, gt=0, description="Override the attacker's requested rate"
    )
    failure_threshold: float = Field(
        0.5, ge=0, le=1, description="Failure rate that marks a workload unstable"
    )
    failure_min_executions: int = Field(
        100, ge=1, description="Executions required before the failure rate is judged"
    )

    # Victims
    victim_rate_per_second: float = Field(
        3.0, gt=0, description="Victim calls launched per second"
    )
    victim_failure_streak_warning: int = Field(
        5, ge=1, description="Consecutive failures of one victim workload before warning"
    )

    # Per-call behaviour
    query_timeout_seconds: float = Field(5.0, gt=0, description="Default per-call timeout")
    resource_exhausted_warning_count: int = Field(
        50, ge=1, description="Consecutive RESOURCE_EXHAUSTED results before warning"
    )

    # Reporting
    high_frequency_threshold: int = Field(
        100_000, ge=1, description="Execution count that flags a root-cause candidate"
    )
    top_statements: int = Field(10, ge=0, description="Server statements listed per ranking")
    seed: Optional[int] = Field(None, description="Seed for victim selection")

    @field_validator("victims")
    @classmethod
    def validate_victims(cls, v: List[str]) -> List[str]:
        """Strip blanks and duplicates while keeping order."""
        seen: list[str] = []
        for name in v:
            name = name.strip()
            if name and name not in seen:
                seen.append(name)
        return seen
