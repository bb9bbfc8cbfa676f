"""
Error taxonomy for harness runs.

Per-call failures never raise: they are folded into an ``ExecutionResult``
carrying an ``ErrorKind``. Only sustained failure patterns (or a run that
cannot start / cannot be reported) escalate as exceptions.
"""

from __future__ import annotations

import re
from enum import Enum

import asyncpg
from asyncpg import exceptions as pg_exc

_SQLSTATE_RE = re.compile(r"\b([0-9A-Z]{5})\b")


class ErrorKind(str, Enum):
    """Why a single query execution failed."""

    TIMEOUT = "TIMEOUT"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    CONNECTION_LOST = "CONNECTION_LOST"
    QUERY_ERROR = "QUERY_ERROR"


class HarnessError(Exception):
    """Base class for conditions that escalate past a single call."""


class SetupFailure(HarnessError):
    """The run cannot start (bad configuration, unreachable database, no metric source)."""


class MissingBaseline(HarnessError):
    """A report cannot be built because a comparison window has no sample."""


class WorkloadUnstable(HarnessError):
    """A workload's failure rate crossed the configured threshold."""

    def __init__(
        self,
        workload_name: str,
        failure_rate: float,
        threshold: float,
        executions: int,
    ) -> None:
        self.workload_name = workload_name
        self.failure_rate = failure_rate
        self.threshold = threshold
        self.executions = executions
        super().__init__(
            f"Workload {workload_name!r} unstable: failure rate "
            f"{failure_rate:.1%} exceeds {threshold:.1%} after {executions} executions"
        )


class PoolExhaustedError(Exception):
    """No connection could be acquired from the shared pool in time."""


def classify_execution_error(exc: BaseException) -> tuple[ErrorKind, str]:
    """
    Map an execution-time exception to an ``ErrorKind`` plus a stable detail.

    The detail is low-cardinality (SQLSTATE or exception type) so failures can
    be aggregated rather than logged one by one.
    """
    if isinstance(exc, (TimeoutError, pg_exc.QueryCanceledError)):
        return ErrorKind.TIMEOUT, type(exc).__name__

    if isinstance(exc, (PoolExhaustedError, pg_exc.TooManyConnectionsError)):
        return ErrorKind.RESOURCE_EXHAUSTED, type(exc).__name__

    if isinstance(
        exc,
        (
            ConnectionError,
            OSError,
            asyncpg.InterfaceError,
            pg_exc.ConnectionDoesNotExistError,
            pg_exc.CannotConnectNowError,
        ),
    ):
        return ErrorKind.CONNECTION_LOST, type(exc).__name__

    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate:
        return ErrorKind.QUERY_ERROR, f"SQLSTATE_{sqlstate}"

    m = _SQLSTATE_RE.search(str(exc or ""))
    if m and any(ch.isdigit() for ch in m.group(1)):
        return ErrorKind.QUERY_ERROR, f"SQLSTATE_{m.group(1)}"

    return ErrorKind.QUERY_ERROR, type(exc).__name__
