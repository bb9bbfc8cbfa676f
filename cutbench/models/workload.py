"""
Workload Definition Models

A workload is a named, parameterized statement plus an execution policy
(target rate or iteration budget). Definitions are frozen so that every actor
of a run can share them read-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

ParameterGenerator = Callable[[], tuple[Any, ...]]


def no_parameters() -> tuple[Any, ...]:
    """Parameter generator for statements without placeholders."""
    return ()


class WorkloadRole(str, Enum):
    """How a workload is used in a run."""

    ATTACKER = "attacker"
    VICTIM = "victim"


@dataclass(frozen=True)
class WorkloadDefinition:
    """Declarative description of a query stream."""

    name: str
    statement_template: str
    parameter_generator: ParameterGenerator = no_parameters
    target_rate_per_second: Optional[float] = None
    total_iterations: Optional[int] = None
    weight: float = 1.0
    role: WorkloadRole = WorkloadRole.VICTIM
    description: str = ""
    requires_tables: tuple[str, ...] = ()
    session_settings: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Workload name is required")
        if not self.statement_template.strip():
            raise ValueError(f"Workload {self.name!r} has an empty statement")
        if self.target_rate_per_second is not None and self.total_iterations is not None:
            raise ValueError(
                f"Workload {self.name!r}: set target_rate_per_second or "
                "total_iterations, not both"
            )
        if self.target_rate_per_second is not None and self.target_rate_per_second <= 0:
            raise ValueError(f"Workload {self.name!r}: target rate must be > 0")
        if self.total_iterations is not None and self.total_iterations < 0:
            raise ValueError(f"Workload {self.name!r}: total_iterations must be >= 0")
        if self.weight <= 0:
            raise ValueError(f"Workload {self.name!r}: weight must be > 0")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Workload {self.name!r}: timeout must be > 0")

    def next_parameters(self) -> tuple[Any, ...]:
        """Draw the bound parameters for one execution."""
        return tuple(self.parameter_generator())
