"""carelog_etl.row_source

Lazy CSV row streams for the batch pipeline.

read_rows() yields one header-normalized dict per data row without loading
the file into memory. Disk reads happen in a worker thread a chunk at a
time so the event loop keeps serving in-flight batch writes. End of file
ends the iteration; any read failure raises RowSourceError.
"""

from __future__ import annotations

import asyncio
import csv
import itertools
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator

from carelog_etl.errors import RowSourceError
from carelog_etl.records import CAREGIVER, CARELOG

# Minimum header contract per record type. Other columns are passed through.
REQUIRED_HEADERS: dict[str, frozenset[str]] = {
    CAREGIVER: frozenset({
        "caregiver_id", "profile_id", "franchisor_id", "agency_id",
        "first_name", "last_name",
    }),
    CARELOG: frozenset({
        "carelog_id", "caregiver_id", "franchisor_id", "agency_id",
        "start_datetime", "end_datetime",
    }),
}

DEFAULT_READ_CHUNK = 1000


def normalize_headers(raw: dict[Any, Any]) -> dict[str, Any]:
    """Return a new dict with header keys whitespace-stripped.

    DictReader files overflow cells under a None key; those are dropped.
    """
    return {k.strip(): v for k, v in raw.items() if k is not None}


def _read_chunk(reader: csv.DictReader, size: int) -> list[dict[str, Any]]:
    return list(itertools.islice(reader, size))


async def read_rows(
    path: Path,
    record_type: str | None = None,
    chunk_rows: int = DEFAULT_READ_CHUNK,
) -> AsyncIterator[dict[str, Any]]:
    """Yield rows of path in file order.

    When record_type is given the header row is checked against
    REQUIRED_HEADERS before any row is yielded.
    """
    try:
        fh = path.open(encoding="utf-8-sig", newline="")
    except OSError as exc:
        raise RowSourceError(f"cannot open {path}: {exc}") from exc

    with fh:
        reader = csv.DictReader(fh)
        try:
            header_set = {k.strip() for k in (reader.fieldnames or [])}
        except (OSError, csv.Error, UnicodeDecodeError) as exc:
            raise RowSourceError(f"cannot read header of {path}: {exc}") from exc

        if record_type is not None:
            missing = REQUIRED_HEADERS[record_type] - header_set
            if missing:
                raise RowSourceError(
                    f"{path.name} missing required headers: {sorted(missing)}"
                )

        while True:
            try:
                chunk = await asyncio.to_thread(_read_chunk, reader, chunk_rows)
            except (OSError, csv.Error, UnicodeDecodeError) as exc:
                raise RowSourceError(
                    f"read error in {path} after line {reader.line_num}: {exc}"
                ) from exc
            if not chunk:
                return
            for raw in chunk:
                yield normalize_headers(raw)


# ---------------------------------------------------------------------------
# Inspection helpers
# ---------------------------------------------------------------------------

def read_headers(path: Path) -> list[str]:
    """Return the stripped header names of path."""
    with path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.reader(fh)
        first = next(reader, [])
    return [h.strip() for h in first]


@dataclass
class FileValidation:
    is_valid: bool
    row_count: int
    headers: list[str]
    errors: list[str] = field(default_factory=list)


def validate_file(path: Path, max_errors: int = 50) -> FileValidation:
    """Scan path once for duplicate header names and ragged rows."""
    errors: list[str] = []
    row_count = 0
    with path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.reader(fh)
        headers = [h.strip() for h in next(reader, [])]
        if len(set(headers)) != len(headers):
            errors.append("Duplicate column names found")
        for cells in reader:
            if not cells:
                continue
            row_count += 1
            if len(cells) != len(headers) and len(errors) < max_errors:
                errors.append(
                    f"Row {row_count} has {len(cells)} columns, expected {len(headers)}"
                )
    return FileValidation(
        is_valid=not errors,
        row_count=row_count,
        headers=headers,
        errors=errors,
    )
