"""
Contention counter sources for the Metric Sampler.

PostgreSQL has no scheduler "signal wait" counter, so CPU queueing is read from
the host scheduler:

- signal wait: run-queue delay summed over CPUs (``/proc/schedstat``, field 8)
- total wait: signal wait plus I/O wait (``psutil.cpu_times().iowait``)
- runnable tasks: ``procs_running`` from ``/proc/stat``
- yields: context switches (``psutil.cpu_stats().ctx_switches``)

``PostgresActivitySource`` keeps the host counters and replaces the runnable
count with backends that are active and not waiting on anything, i.e. on a CPU
or queued for one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import psutil

from cutbench.connectors.postgres_pool import PostgresConnectionPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentionCounters:
    signal_wait_time_ms: float
    total_wait_time_ms: float
    runnable_task_count: int
    yield_count: int


class MetricSource(Protocol):
    """Something the sampler can poll."""

    async def probe(self) -> None:
        """Raise if the source cannot produce counters on this system."""
        ...

    async def read(self) -> ContentionCounters: ...

    async def close(self) -> None: ...


class HostSchedulerSource:
    """Scheduler counters of the machine the harness runs on."""

    def __init__(self, proc_root: str | Path = "/proc") -> None:
        self.proc_root = Path(proc_root)

    def _run_delay_ms(self) -> float:
        total_ns = 0
        found = False
        with open(self.proc_root / "schedstat", "r") as f:
            for line in f:
                parts = line.split()
                if not parts or not parts[0].startswith("cpu") or len(parts) < 9:
                    continue
                total_ns += int(parts[8])
                found = True
        if not found:
            raise RuntimeError("no per-cpu lines in schedstat")
        return total_ns / 1_000_000.0

    def _procs_running(self) -> int:
        with open(self.proc_root / "stat", "r") as f:
            for line in f:
                if line.startswith("procs_running"):
                    return int(line.split()[1])
        raise RuntimeError("procs_running not found in stat")

    async def probe(self) -> None:
        try:
            self._run_delay_ms()
            self._procs_running()
        except (OSError, ValueError, RuntimeError) as e:
            raise RuntimeError(
                f"host scheduler counters unavailable under {self.proc_root}: {e}"
            ) from e

    async def read(self) -> ContentionCounters:
        signal_wait_ms = self._run_delay_ms()
        iowait_ms = float(getattr(psutil.cpu_times(), "iowait", 0.0)) * 1000.0
        return ContentionCounters(
            signal_wait_time_ms=signal_wait_ms,
            total_wait_time_ms=signal_wait_ms + iowait_ms,
            runnable_task_count=self._procs_running(),
            yield_count=int(psutil.cpu_stats().ctx_switches),
        )

    async def close(self) -> None:
        return None


_ON_CPU_BACKENDS_SQL = """
    SELECT count(*)
    FROM pg_stat_activity
    WHERE state = 'active'
      AND wait_event IS NULL
      AND backend_type = 'client backend'
      AND pid <> pg_backend_pid()
"""


class PostgresActivitySource:
    """
    Host counters plus the database's own runnable-backend count.

    Uses a dedicated single-connection pool so that exhaustion of the shared
    workload pool cannot stall sampling.
    """

    def __init__(
        self,
        pool: PostgresConnectionPool,
        host: Optional[HostSchedulerSource] = None,
        *,
        query_timeout: float = 2.0,
    ) -> None:
        self.pool = pool
        self.host = host or HostSchedulerSource()
        self.query_timeout = query_timeout

    async def probe(self) -> None:
        await self.host.probe()
        await self.pool.initialize()
        await self.pool.ping(timeout=self.query_timeout)

    async def read(self) -> ContentionCounters:
        host = await self.host.read()
        on_cpu = await self.pool.fetch_val(_ON_CPU_BACKENDS_SQL, timeout=self.query_timeout)
        return ContentionCounters(
            signal_wait_time_ms=host.signal_wait_time_ms,
            total_wait_time_ms=host.total_wait_time_ms,
            runnable_task_count=int(on_cpu or 0),
            yield_count=host.yield_count,
        )

    async def close(self) -> None:
        await self.pool.close()
