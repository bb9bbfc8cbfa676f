"""
Report Writer

Writes a ComparisonReport exactly once, atomically: the report goes to a
temporary file beside the target and is renamed into place, so readers never
see a partial report.

Formats by suffix:
- ``.jsonl`` (default): one JSON object per row, tagged with ``record_type``
- ``.json``: the whole report as one document
- ``.parquet``: the ``.jsonl`` rows as a single PyArrow table
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import pyarrow as pa
import pyarrow.parquet as pq

from cutbench.models.report import ComparisonReport

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".jsonl", ".json", ".parquet")


def report_records(report: ComparisonReport) -> list[dict[str, Any]]:
    """Flatten a report into ``record_type``-tagged rows."""
    data = report.model_dump(mode="json")
    records: list[dict[str, Any]] = [
        {
            "record_type": "run",
            "status": data["status"],
            "flags": data["flags"],
            "generated_at": data["generated_at"],
            "sample_count": data["sample_count"],
            "unsampled_intervals": data["unsampled_intervals"],
            "high_frequency_candidates": report.high_frequency_candidates(),
            "attacker": data["attacker"],
            "config": data["config"],
        }
    ]
    sections = (
        ("phase", "phases"),
        ("metric_delta", "metric_deltas"),
        ("workload_ranking", "workload_rankings"),
        ("latency_shift", "latency_shifts"),
        ("statement", "top_statements"),
    )
    for record_type, key in sections:
        for row in data[key]:
            records.append({"record_type": record_type, **row})
    for message in data["warnings"]:
        records.append({"record_type": "warning", "message": message})
    return records


def _to_parquet_table(records: list[dict[str, Any]]) -> pa.Table:
    # Union of keys across record types; nested values become JSON strings.
    columns: list[str] = []
    for rec in records:
        for key in rec:
            if key not in columns:
                columns.append(key)

    rows: list[dict[str, Any]] = []
    for rec in records:
        row: dict[str, Any] = {}
        for col in columns:
            value = rec.get(col)
            if isinstance(value, (dict, list)):
                value = json.dumps(value, sort_keys=True)
            row[col] = value
        rows.append(row)

    # Numeric columns shared by several record types can mix int and float.
    for col in columns:
        kinds = {type(r[col]) for r in rows if r[col] is not None}
        if kinds == {int, float}:
            for r in rows:
                if r[col] is not None:
                    r[col] = float(r[col])
        elif len(kinds) > 1:
            for r in rows:
                if r[col] is not None:
                    r[col] = str(r[col])
    return pa.Table.from_pylist(rows)


def _write_atomic(path: Path, write) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        write(tmp)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def write_report(report: ComparisonReport, out: str | Path) -> Path:
    """
    Write ``report`` to ``out``; the suffix picks the format.

    Returns:
        The resolved output path

    Raises:
        ValueError: unsupported suffix
    """
    path = Path(out)
    suffix = path.suffix.lower() or ".jsonl"
    if not path.suffix:
        path = path.with_suffix(".jsonl")
    if suffix not in SUPPORTED_SUFFIXES:
        raise ValueError(
            f"Unsupported report format {suffix!r}; use one of {', '.join(SUPPORTED_SUFFIXES)}"
        )
    path.parent.mkdir(parents=True, exist_ok=True)

    if suffix == ".json":
        payload = report.model_dump_json(indent=2)

        def write(tmp: Path) -> None:
            tmp.write_text(payload, encoding="utf-8")

    elif suffix == ".jsonl":
        records = report_records(report)

        def write(tmp: Path) -> None:
            with open(tmp, "w", encoding="utf-8") as f:
                for rec in records:
                    f.write(json.dumps(rec))
                    f.write("\n")

    else:
        table = _to_parquet_table(report_records(report))

        def write(tmp: Path) -> None:
            pq.write_table(table, tmp, compression="snappy")

    _write_atomic(path, write)
    logger.info("Report written to %s (%s)", path, report.status.value)
    return path
