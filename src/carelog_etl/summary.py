"""carelog_etl.summary

Per-file results, run-level statistics, and the text / JSON run reports.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

# Caps on list-valued fields written to reports.
MAX_REPORTED_IDS = 100
MAX_REPORTED_ERRORS = 50


@dataclass
class BatchProgress:
    """Emitted after each batch finishes (successfully or not)."""

    file_path: str
    batch_number: int
    rows: int
    inserted: int
    failed: int
    elapsed_ms: float


@dataclass
class FileResult:
    file_path: str
    record_type: str
    total_rows: int = 0
    processed_rows: int = 0
    failed_rows: int = 0
    rejected_rows: int = 0
    skipped_duplicates: int = 0
    skipped_missing_parent: int = 0
    skipped_carelog_ids: list[str] = field(default_factory=list)
    processing_time_ms: float = 0.0
    batches_processed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def skipped_rows(self) -> int:
        return self.skipped_duplicates + self.skipped_missing_parent

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "record_type": self.record_type,
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "failed_rows": self.failed_rows,
            "rejected_rows": self.rejected_rows,
            "skipped_duplicates": self.skipped_duplicates,
            "skipped_missing_parent": self.skipped_missing_parent,
            "skipped_carelog_ids": self.skipped_carelog_ids[:MAX_REPORTED_IDS],
            "processing_time_ms": round(self.processing_time_ms, 1),
            "batches_processed": self.batches_processed,
            "errors": self.errors[:MAX_REPORTED_ERRORS],
        }


@dataclass
class RunStats:
    total_rows: int = 0
    total_processed: int = 0
    total_failed: int = 0
    total_rejected: int = 0
    total_skipped: int = 0
    total_time_ms: float = 0.0
    average_speed: float = 0.0
    success_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "total_rejected": self.total_rejected,
            "total_skipped": self.total_skipped,
            "total_time_ms": round(self.total_time_ms, 1),
            "average_speed": round(self.average_speed, 2),
            "success_rate": round(self.success_rate, 2),
        }


def compute_run_stats(results: Iterable[FileResult]) -> RunStats:
    """Aggregate file results.

    average_speed is processed rows per second of summed file time;
    success_rate is processed / total as a percentage.
    """
    results = list(results)
    stats = RunStats(
        total_rows=sum(r.total_rows for r in results),
        total_processed=sum(r.processed_rows for r in results),
        total_failed=sum(r.failed_rows for r in results),
        total_rejected=sum(r.rejected_rows for r in results),
        total_skipped=sum(r.skipped_rows for r in results),
        total_time_ms=sum(r.processing_time_ms for r in results),
    )
    if stats.total_time_ms > 0:
        stats.average_speed = stats.total_processed / stats.total_time_ms * 1000
    if stats.total_rows > 0:
        stats.success_rate = stats.total_processed / stats.total_rows * 100
    return stats


def build_run_report(results: list[FileResult], stats: RunStats) -> str:
    lines = [
        "=== Carelog ETL Run Report ===",
        f"files            : {len(results)}",
        f"total_rows       : {stats.total_rows}",
        f"processed_rows   : {stats.total_processed}",
        f"skipped_rows     : {stats.total_skipped}",
        f"rejected_rows    : {stats.total_rejected}",
        f"failed_rows      : {stats.total_failed}",
        f"total_time_ms    : {stats.total_time_ms:.0f}",
        f"average_speed    : {stats.average_speed:.2f} rows/s",
        f"success_rate     : {stats.success_rate:.2f}%",
    ]
    for result in results:
        lines += [
            "",
            f"--- {result.file_path} ({result.record_type}) ---",
            f"total={result.total_rows} processed={result.processed_rows} "
            f"duplicates={result.skipped_duplicates} "
            f"missing_parent={result.skipped_missing_parent} "
            f"rejected={result.rejected_rows} failed={result.failed_rows} "
            f"batches={result.batches_processed} "
            f"time_ms={result.processing_time_ms:.0f}",
        ]
        if result.errors:
            lines.append(f"errors (first 10 of {len(result.errors)}):")
            lines += [f"  {e}" for e in result.errors[:10]]
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    input_dir: str,
    results: list[FileResult],
    stats: RunStats,
    report_dir: Path,
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "input_dir": input_dir,
        "stats": stats.to_dict(),
        "files": [r.to_dict() for r in results],
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
