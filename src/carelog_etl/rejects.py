"""carelog_etl.rejects

CSV sink for rows the record transformer rejected.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Mapping


class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    The header is fixed by the first rejected row; later rows with extra
    columns have them dropped, missing columns are left blank.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: Mapping[str, Any], reason: str, source_file: str = "") -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_source_file", "_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_source_file"] = source_file
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None
