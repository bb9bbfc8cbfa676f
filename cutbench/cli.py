"""Command-line entry point: run the harness or list available workloads."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from cutbench.config import Settings, get_settings
from cutbench.connectors.postgres_pool import PostgresConnectionPool
from cutbench.core.errors import MissingBaseline, SetupFailure
from cutbench.core.metric_sources import HostSchedulerSource, PostgresActivitySource
from cutbench.core.orchestrator import RunOrchestrator, RunOutcome
from cutbench.core.pg_stats import PostgresStatementStats
from cutbench.core.query_executor import QueryExecutor
from cutbench.core.report_writer import write_report
from cutbench.core.workload_catalog import WorkloadCatalog, WorkloadCatalogError
from cutbench.models.config import DEFAULT_BASELINE_SECONDS, HarnessConfig

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SETUP_FAILURE = 2
EXIT_MISSING_BASELINE = 3
EXIT_INTERRUPTED = 130


def _csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cutbench",
        description="Measure how a cheap, very frequent query degrades a mixed workload.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run baseline, attack and post-capture; write a report.")
    run.add_argument("--attacker", required=True, help="Workload driven at high frequency.")
    run.add_argument(
        "--victims",
        required=True,
        type=_csv,
        help="Comma-separated victim workloads (mixed traffic).",
    )
    run.add_argument(
        "--duration", type=float, required=True, help="Attack window in seconds."
    )
    run.add_argument(
        "--sample-interval",
        type=float,
        required=True,
        help="Seconds between contention samples.",
    )
    run.add_argument(
        "--out",
        required=True,
        help="Report path; suffix selects .jsonl (default), .json or .parquet.",
    )
    run.add_argument(
        "--attacker-workers", type=int, default=50, help="Concurrent attacker workers."
    )
    run.add_argument(
        "--attacker-iterations",
        type=int,
        default=None,
        help="Override the attacker's iteration budget.",
    )
    run.add_argument(
        "--attacker-rate",
        type=float,
        default=None,
        help="Requested attacker rate (calls/s); an upper bound only.",
    )
    run.add_argument(
        "--baseline-seconds",
        type=float,
        default=DEFAULT_BASELINE_SECONDS,
        help="Victim-only window before the attack (0 disables latency shifts).",
    )
    run.add_argument(
        "--victim-rate", type=float, default=3.0, help="Victim calls launched per second."
    )
    run.add_argument(
        "--failure-threshold",
        type=float,
        default=0.5,
        help="Attacker failure rate (0-1) that stops the attack.",
    )
    run.add_argument(
        "--high-frequency-threshold",
        type=int,
        default=100_000,
        help="Execution count that flags a workload as a high-frequency root cause.",
    )
    run.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-call timeout in seconds (default from settings).",
    )
    run.add_argument(
        "--workloads-file",
        action="append",
        default=[],
        help="Extra YAML workload file (repeatable).",
    )
    run.add_argument("--seed", type=int, default=None, help="Seed for victim selection.")
    run.add_argument(
        "--no-pg-activity",
        action="store_true",
        help="Use host runnable-task count instead of pg_stat_activity.",
    )
    run.add_argument(
        "--no-statement-stats",
        action="store_true",
        help="Skip pg_stat_statements top-statement capture.",
    )

    workloads = sub.add_parser("workloads", help="List the workload catalog.")
    workloads.add_argument(
        "--workloads-file",
        action="append",
        default=[],
        help="Extra YAML workload file (repeatable).",
    )
    return parser


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=settings.LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(settings.LOG_FILE)
            if settings.LOG_FILE
            else logging.NullHandler(),
        ],
    )
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def _harness_config(args: argparse.Namespace, settings: Settings) -> HarnessConfig:
    return HarnessConfig(
        attacker=args.attacker,
        victims=args.victims,
        duration_seconds=args.duration,
        sample_interval_seconds=args.sample_interval,
        baseline_seconds=args.baseline_seconds,
        attacker_workers=args.attacker_workers,
        attacker_iterations=args.attacker_iterations,
        attacker_rate_per_second=args.attacker_rate,
        failure_threshold=args.failure_threshold,
        victim_rate_per_second=args.victim_rate,
        query_timeout_seconds=(
            args.timeout
            if args.timeout is not None
            else settings.DEFAULT_QUERY_TIMEOUT_SECONDS
        ),
        high_frequency_threshold=args.high_frequency_threshold,
        seed=args.seed,
    )


def _install_signal_handlers(orchestrator: RunOrchestrator) -> None:
    """First SIGINT/SIGTERM cancels the run; a second one interrupts outright."""
    loop = asyncio.get_running_loop()
    received: list[str] = []

    def _handler(sig: signal.Signals) -> None:
        if received:
            raise KeyboardInterrupt
        received.append(sig.name)
        orchestrator.request_cancel(f"received {sig.name}")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handler, sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; Ctrl-C falls back to KeyboardInterrupt.
            pass


def _print_summary(outcome: RunOutcome, path: Path) -> None:
    report = outcome.report
    print(f"[cutbench] status={report.status.value} flags={','.join(report.flags) or '-'}")
    for row in report.metric_deltas:
        pct = "n/a" if row.percent_change is None else f"{row.percent_change:+.1f}%"
        print(
            f"[cutbench] {row.metric}: {row.baseline_value:.2f} -> "
            f"{row.post_value:.2f} (delta {row.delta:+.2f}, {pct})"
        )
    for row in report.workload_rankings[:5]:
        marker = " HIGH FREQUENCY" if row.high_frequency else ""
        print(
            f"[cutbench] #{row.rank} {row.workload}: count={row.count} "
            f"total={row.total_duration_micros / 1000:.1f}ms "
            f"avg={row.avg_duration_micros / 1000:.3f}ms{marker}"
        )
    for shift in report.latency_shifts:
        if shift.latency_driven:
            print(
                f"[cutbench] {shift.workload} slowed down under attack "
                f"(avg {shift.avg_duration_change_pct or 0:+.1f}%)"
            )
    print(f"[cutbench] report written to {path}")


async def _run_harness(args: argparse.Namespace, settings: Settings) -> int:
    try:
        config = _harness_config(args, settings)
        catalog = WorkloadCatalog.load(
            [Path(p) for p in args.workloads_file], seed=args.seed
        )
    except (ValidationError, WorkloadCatalogError, FileNotFoundError) as e:
        logger.error("Invalid run configuration: %s", e)
        return EXIT_SETUP_FAILURE

    workload_pool = PostgresConnectionPool.from_settings(settings, pool_name="workload")
    monitor_pool: Optional[PostgresConnectionPool] = None
    if not (args.no_pg_activity and args.no_statement_stats):
        monitor_pool = PostgresConnectionPool.from_settings(
            settings, pool_name="monitor", min_size=1, max_size=2
        )

    metric_source = (
        HostSchedulerSource()
        if args.no_pg_activity or monitor_pool is None
        else PostgresActivitySource(monitor_pool)
    )
    stats_provider = (
        None
        if args.no_statement_stats or monitor_pool is None
        else PostgresStatementStats(monitor_pool)
    )

    orchestrator = RunOrchestrator(
        config,
        catalog,
        QueryExecutor(workload_pool),
        metric_source,
        stats_provider=stats_provider,
    )
    _install_signal_handlers(orchestrator)

    try:
        outcome = await orchestrator.run()
        logger.debug("Workload pool at end of run: %s", await workload_pool.get_pool_stats())
    except SetupFailure as e:
        logger.error("Setup failed: %s", e)
        return EXIT_SETUP_FAILURE
    except MissingBaseline as e:
        logger.error("No report produced: %s", e)
        return EXIT_MISSING_BASELINE
    finally:
        await workload_pool.close()
        if monitor_pool is not None:
            await monitor_pool.close()

    path = write_report(outcome.report, args.out)
    _print_summary(outcome, path)
    return EXIT_OK


def _list_workloads(args: argparse.Namespace) -> int:
    try:
        catalog = WorkloadCatalog.load([Path(p) for p in args.workloads_file])
    except (WorkloadCatalogError, FileNotFoundError) as e:
        print(f"[cutbench] {e}", file=sys.stderr)
        return EXIT_SETUP_FAILURE

    for w in catalog:
        if w.total_iterations is not None:
            policy = f"iterations={w.total_iterations}"
        elif w.target_rate_per_second is not None:
            policy = f"rate={w.target_rate_per_second}/s"
        else:
            policy = f"weight={w.weight:g}"
        print(f"{w.name:<24} {w.role.value:<9} {policy:<20} {w.description}")
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    _configure_logging(settings)

    if args.command == "workloads":
        return _list_workloads(args)

    try:
        return asyncio.run(_run_harness(args, settings))
    except KeyboardInterrupt:
        print("[cutbench] interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
