"""
Query Executor

Thin adapter over the database's query interface. One call, one round-trip,
one ExecutionResult; never retries and never raises for per-call failures.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

from cutbench.core.errors import ErrorKind, classify_execution_error
from cutbench.models.results import ExecutionResult
from cutbench.models.workload import WorkloadDefinition

logger = logging.getLogger(__name__)

# Grace period on top of the per-call timeout before the call is abandoned.
DEFAULT_TIMEOUT_OVERHEAD_SECONDS = 0.25


class QueryBackend(Protocol):
    """External query-execution interface (see PostgresConnectionPool)."""

    async def run(
        self,
        statement: str,
        params: Sequence[Any] = (),
        *,
        timeout: float,
        session_settings: Optional[Mapping[str, str]] = None,
    ) -> int: ...

    async def ping(self, timeout: float = 5.0) -> None: ...


class QueryExecutor:
    """
    Executes single statements and measures them.

    Attacker and victims share one executor, and therefore one backend pool:
    the contention being measured only appears when they compete for the
    same resources.
    """

    def __init__(
        self,
        backend: QueryBackend,
        *,
        timeout_overhead_seconds: float = DEFAULT_TIMEOUT_OVERHEAD_SECONDS,
    ) -> None:
        self.backend = backend
        self.timeout_overhead_seconds = timeout_overhead_seconds

    async def execute(
        self,
        workload_name: str,
        statement: str,
        params: Sequence[Any],
        timeout: float,
        *,
        session_settings: Optional[Mapping[str, str]] = None,
    ) -> ExecutionResult:
        """
        Execute ``statement`` once and return its result record.

        Args:
            workload_name: Workload the execution is attributed to
            statement: Statement template with ``$n`` placeholders
            params: Bound parameters
            timeout: Deadline in seconds, required and non-zero
            session_settings: Explicit per-call settings (no ambient session state)

        Returns:
            ExecutionResult; on deadline expiry ``succeeded=False, error_kind=TIMEOUT``
        """
        if not timeout or timeout <= 0:
            raise ValueError("timeout must be > 0")

        start_time = datetime.now(UTC)
        t0 = time.perf_counter_ns()
        rows: Optional[int] = None
        error_kind: Optional[ErrorKind] = None
        error_detail: Optional[str] = None

        try:
            rows = await asyncio.wait_for(
                self.backend.run(
                    statement,
                    params,
                    timeout=timeout,
                    session_settings=session_settings,
                ),
                timeout=timeout + self.timeout_overhead_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error_kind, error_detail = classify_execution_error(e)
            logger.debug(
                "Execution of %s failed (%s): %s", workload_name, error_detail, e
            )

        duration_micros = (time.perf_counter_ns() - t0) // 1000
        return ExecutionResult(
            workload_name=workload_name,
            start_time=start_time,
            duration_micros=int(duration_micros),
            succeeded=error_kind is None,
            error_kind=error_kind,
            error_detail=error_detail,
            rows=rows if isinstance(rows, int) else None,
        )

    async def execute_workload(
        self,
        workload: WorkloadDefinition,
        default_timeout: float,
    ) -> ExecutionResult:
        """Execute one call of ``workload`` with freshly drawn parameters."""
        return await self.execute(
            workload.name,
            workload.statement_template,
            workload.next_parameters(),
            workload.timeout_seconds or default_timeout,
            session_settings=workload.session_settings or None,
        )

    async def ping(self, timeout: float = 5.0) -> None:
        await self.backend.ping(timeout=timeout)
