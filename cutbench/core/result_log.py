"""
Append-only result logs.

Each actor (load driver, victim runner) owns one log and is its only writer.
All writers run on the same event loop, so appends need no lock; logs are only
merged at report time.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Iterator

from cutbench.models.results import ExecutionResult


class ResultLog:
    """Append-only sequence of ExecutionResults for one component."""

    def __init__(self, owner: str) -> None:
        self.owner = owner
        self._records: list[ExecutionResult] = []
        self._failures = 0

    def append(self, result: ExecutionResult) -> None:
        self._records.append(result)
        if not result.succeeded:
            self._failures += 1

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ExecutionResult]:
        return iter(tuple(self._records))

    @property
    def failures(self) -> int:
        return self._failures

    def count_for(self, workload_name: str) -> int:
        return sum(1 for r in self._records if r.workload_name == workload_name)

    def snapshot(self) -> tuple[ExecutionResult, ...]:
        """Immutable copy of everything recorded so far."""
        return tuple(self._records)


def merge_by_workload(
    logs: Iterable[ResultLog],
) -> dict[str, tuple[ExecutionResult, ...]]:
    """
    Merge component logs into per-workload streams ordered by start time.

    Results of different workloads stay unrelated; only each workload's own
    stream is ordered.
    """
    grouped: dict[str, list[ExecutionResult]] = defaultdict(list)
    for log in logs:
        for result in log.snapshot():
            grouped[result.workload_name].append(result)
    return {
        name: tuple(sorted(results, key=lambda r: r.start_time))
        for name, results in grouped.items()
    }
