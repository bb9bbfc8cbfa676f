"""
Unit tests for pg_stat_statements snapshot handling.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from cutbench.core.pg_stats import (
    PgStatSnapshot,
    PostgresStatementStats,
    compute_snapshot_delta,
    is_system_query,
    rank_statements,
    statement_report,
)

NOW = datetime(2025, 1, 1, tzinfo=UTC)

HOT = "SELECT count(*) FROM customers WHERE status = $1"
SLOW = "SELECT o.order_date::date, sum(o.order_amount) FROM orders o GROUP BY 1"


def _snap(stats: dict, available: bool = True) -> PgStatSnapshot:
    return PgStatSnapshot(timestamp=NOW, available=available, stats=stats)


def _row(query: str, calls: int, total: float) -> dict:
    return {
        "query": query,
        "calls": calls,
        "total_exec_time": total,
        "rows": calls,
        "shared_blks_hit": 0,
        "shared_blks_read": 0,
    }


class TestSystemQueries:
    @pytest.mark.parametrize(
        "query",
        [
            "SELECT * FROM pg_stat_statements",
            "SELECT count(*) FROM pg_stat_activity WHERE state = 'active'",
            "SELECT set_config($1, $2, true)",
            "BEGIN",
            "SELECT to_regclass($1::text)::oid",
        ],
    )
    def test_monitoring_queries_are_system(self, query: str) -> None:
        assert is_system_query(query) is True

    def test_workload_query_is_not_system(self) -> None:
        assert is_system_query(HOT) is False


class TestDelta:
    def test_delta_excludes_idle_and_system(self) -> None:
        before = _snap({1: _row(HOT, 100, 10.0), 2: _row(SLOW, 5, 500.0)})
        after = _snap(
            {
                1: _row(HOT, 200_100, 50_010.0),
                2: _row(SLOW, 5, 500.0),
                3: _row("SELECT * FROM pg_stat_statements", 3, 1.0),
                4: _row("SELECT 42", 1, 0.1),
            }
        )

        delta = compute_snapshot_delta(before, after)

        assert set(delta) == {1, 4}
        assert delta[1]["calls"] == 200_000
        assert delta[1]["total_exec_time"] == pytest.approx(50_000.0)
        assert delta[1]["mean_exec_time"] == pytest.approx(0.25)

    def test_rankings_by_time_and_calls(self) -> None:
        delta = {
            1: {"query": HOT, "calls": 200_000, "total_exec_time": 40_000.0, "mean_exec_time": 0.2},
            2: {"query": SLOW, "calls": 200, "total_exec_time": 60_000.0, "mean_exec_time": 300.0},
        }

        stats = rank_statements(delta, limit=5, high_frequency_threshold=100_000)

        by_time = [s for s in stats if s.ranking == "by_total_time"]
        by_calls = [s for s in stats if s.ranking == "by_calls"]
        assert [s.query for s in by_time] == [SLOW, HOT]
        assert [s.query for s in by_calls] == [HOT, SLOW]
        assert by_calls[0].high_frequency is True
        assert by_calls[1].high_frequency is False

    def test_limit_applies_per_ranking(self) -> None:
        delta = {
            i: {"query": f"SELECT {i}", "calls": i, "total_exec_time": float(i), "mean_exec_time": 1.0}
            for i in range(1, 8)
        }
        stats = rank_statements(delta, limit=3, high_frequency_threshold=10)
        assert len(stats) == 6


class TestStatementReport:
    def test_unavailable_snapshot_yields_warning_only(self) -> None:
        before = _snap({}, available=False)
        before.warnings.append("pg_stat_statements not installed")

        stats, warnings = statement_report(
            before, before, limit=10, high_frequency_threshold=100
        )

        assert stats == []
        assert warnings == ["pg_stat_statements not installed"]

    def test_no_provider(self) -> None:
        assert statement_report(None, None, limit=10, high_frequency_threshold=1) == ([], [])


class TestPostgresStatementStats:
    @pytest.mark.asyncio
    async def test_snapshot_without_extension(self) -> None:
        pool = MagicMock()
        pool.fetch_val = AsyncMock(return_value=False)
        pool.fetch_all = AsyncMock()

        snap = await PostgresStatementStats(pool).snapshot()

        assert snap.available is False
        assert "not installed" in snap.warnings[0]
        pool.fetch_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_snapshot_with_extension(self) -> None:
        pool = MagicMock()
        pool.fetch_val = AsyncMock(return_value=True)
        pool.fetch_all = AsyncMock(
            return_value=[{"queryid": 7, **_row(HOT, 10, 1.0)}]
        )

        snap = await PostgresStatementStats(pool).snapshot()

        assert snap.available is True
        assert snap.stats[7]["calls"] == 10

    @pytest.mark.asyncio
    async def test_snapshot_query_failure_is_a_warning(self) -> None:
        pool = MagicMock()
        pool.fetch_val = AsyncMock(return_value=True)
        pool.fetch_all = AsyncMock(side_effect=RuntimeError("permission denied"))

        snap = await PostgresStatementStats(pool).snapshot()

        assert snap.available is False
        assert "permission denied" in snap.warnings[0]
