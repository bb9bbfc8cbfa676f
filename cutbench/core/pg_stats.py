"""
PostgreSQL statement statistics.

Captures pg_stat_statements snapshots at the end of the baseline and after the
attack so the report can list server-side top consumers, by total execution
time and by call count. The high-frequency attacker typically tops the calls
ranking while each of its calls looks negligible.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Optional, Protocol

from cutbench.connectors.postgres_pool import PostgresConnectionPool
from cutbench.models.report import StatementStat

logger = logging.getLogger(__name__)

_SYSTEM_MARKERS = (
    "PG_STAT_",
    "PG_SETTINGS",
    "PG_DATABASE",
    "PG_EXTENSION",
    "PG_CATALOG",
    "INFORMATION_SCHEMA",
    "SET_CONFIG(",
    "TO_REGCLASS(",
)

_CONNECTION_COMMANDS = ("UNLISTEN", "CLOSE ALL", "RESET ALL", "BEGIN", "COMMIT", "ROLLBACK")

DELTA_FIELDS = (
    "calls",
    "total_exec_time",
    "rows",
    "shared_blks_hit",
    "shared_blks_read",
)


@dataclass
class PgStatSnapshot:
    """Snapshot of pg_stat_statements at a point in time."""

    timestamp: datetime
    available: bool = False
    stats: dict[int, dict[str, Any]] = field(default_factory=dict)  # queryid -> stats
    warnings: list[str] = field(default_factory=list)


class StatementStatsProvider(Protocol):
    async def snapshot(self) -> PgStatSnapshot: ...


def is_system_query(query_text: str) -> bool:
    """Monitoring and connection-management statements are not workload."""
    q = (query_text or "").upper().strip()
    if q.startswith(_CONNECTION_COMMANDS):
        return True
    return any(marker in q for marker in _SYSTEM_MARKERS)


async def check_pg_stat_statements_available(pool: PostgresConnectionPool) -> bool:
    """
    Check if pg_stat_statements extension is installed.

    Returns:
        True if extension is available and queryable
    """
    try:
        result = await pool.fetch_val("""
            SELECT EXISTS(
                SELECT 1 FROM pg_extension
                WHERE extname = 'pg_stat_statements'
            )
        """)
        return bool(result)
    except Exception as e:
        logger.warning("Error checking pg_stat_statements availability: %s", e)
        return False


class PostgresStatementStats:
    """pg_stat_statements reader bound to one pool."""

    def __init__(self, pool: PostgresConnectionPool, *, timeout: float = 10.0) -> None:
        self.pool = pool
        self.timeout = timeout

    async def snapshot(self) -> PgStatSnapshot:
        """
        Capture current pg_stat_statements state for the current database.

        Never raises: an unavailable extension or a failed query yields an
        empty snapshot carrying a warning.
        """
        snapshot = PgStatSnapshot(timestamp=datetime.now(UTC))

        if not await check_pg_stat_statements_available(self.pool):
            snapshot.warnings.append(
                "pg_stat_statements not installed; server-side top statements unavailable "
                "(CREATE EXTENSION pg_stat_statements; requires shared_preload_libraries)"
            )
            return snapshot

        query = """
            SELECT
                queryid,
                query,
                calls,
                total_exec_time,
                rows,
                shared_blks_hit,
                shared_blks_read
            FROM pg_stat_statements
            WHERE dbid = (SELECT oid FROM pg_database WHERE datname = current_database())
        """
        try:
            rows = await self.pool.fetch_all(query, timeout=self.timeout)
        except Exception as e:
            logger.warning("Error capturing pg_stat_statements snapshot: %s", e)
            snapshot.warnings.append(f"pg_stat_statements snapshot failed: {e}")
            return snapshot

        snapshot.available = True
        for row in rows:
            snapshot.stats[row["queryid"]] = dict(row)

        logger.debug(
            "Captured pg_stat_statements snapshot with %d entries", len(snapshot.stats)
        )
        return snapshot


def compute_snapshot_delta(
    before: PgStatSnapshot,
    after: PgStatSnapshot,
) -> dict[int, dict[str, Any]]:
    """
    Per-queryid activity between two snapshots, system queries excluded.

    Entries with no calls in the window are dropped.
    """
    by_queryid: dict[int, dict[str, Any]] = {}

    for queryid, after_stats in after.stats.items():
        query_text = after_stats.get("query") or ""
        if is_system_query(query_text):
            continue
        before_stats = before.stats.get(queryid, {})

        d: dict[str, Any] = {"query": query_text}
        for field_name in DELTA_FIELDS:
            after_val = after_stats.get(field_name, 0) or 0
            before_val = before_stats.get(field_name, 0) or 0
            d[field_name] = after_val - before_val

        if d["calls"] > 0:
            d["mean_exec_time"] = d["total_exec_time"] / d["calls"]
            by_queryid[queryid] = d

    return by_queryid


def rank_statements(
    by_queryid: dict[int, dict[str, Any]],
    *,
    limit: int,
    high_frequency_threshold: int,
    max_query_chars: int = 200,
) -> list[StatementStat]:
    """Top ``limit`` statements by total execution time and by calls."""
    if limit <= 0 or not by_queryid:
        return []

    out: list[StatementStat] = []
    rankings = (
        ("by_total_time", lambda d: (float(d["total_exec_time"]), int(d["calls"]))),
        ("by_calls", lambda d: (int(d["calls"]), float(d["total_exec_time"]))),
    )
    for ranking, key in rankings:
        ordered = sorted(by_queryid.values(), key=key, reverse=True)[:limit]
        for rank, d in enumerate(ordered, start=1):
            calls = int(d["calls"])
            out.append(
                StatementStat(
                    ranking=ranking,
                    rank=rank,
                    query=" ".join(str(d["query"]).split())[:max_query_chars],
                    calls=calls,
                    total_exec_time_ms=float(d["total_exec_time"]),
                    mean_exec_time_ms=float(d["mean_exec_time"]),
                    high_frequency=calls > high_frequency_threshold,
                )
            )
    return out


def statement_report(
    before: Optional[PgStatSnapshot],
    after: Optional[PgStatSnapshot],
    *,
    limit: int,
    high_frequency_threshold: int,
) -> tuple[list[StatementStat], list[str]]:
    """Ranked statements plus any capability warnings."""
    warnings: list[str] = []
    for snap in (before, after):
        if snap is not None:
            for w in snap.warnings:
                if w not in warnings:
                    warnings.append(w)
    if before is None or after is None or not (before.available and after.available):
        return [], warnings
    delta = compute_snapshot_delta(before, after)
    return (
        rank_statements(
            delta, limit=limit, high_frequency_threshold=high_frequency_threshold
        ),
        warnings,
    )
