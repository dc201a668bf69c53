"""carelog_etl.orchestrator

Finds the CSV files of a run, decides which record type each holds and runs
them through the batch dispatcher.

Sequential mode (the default, and always with a single file) processes files
in sorted name order, so every caregiver file commits before any carelog file
whose name sorts after it. Parallel mode runs the caregiver group and the
carelog group at the same time, each group through a file-level limiter of
max_concurrency. Carelogs may then be written before their caregivers commit;
those rows are reported as skipped for a missing parent.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable

from carelog_etl.batcher import BatchDispatcher, ProgressCallback
from carelog_etl.config import PipelineConfig
from carelog_etl.limiter import ConcurrencyLimiter
from carelog_etl.records import CAREGIVER, CARELOG, RECORD_TYPES
from carelog_etl.rejects import RejectWriter
from carelog_etl.store import Store
from carelog_etl.summary import BatchProgress, FileResult
from carelog_etl.writer import BatchWriter

log = logging.getLogger(__name__)


def discover_csv_files(input_dir: Path) -> list[Path]:
    """Return the *.csv files (any case) directly under input_dir, sorted by name.

    A missing input_dir is created and yields no files.
    """
    if not input_dir.exists():
        input_dir.mkdir(parents=True, exist_ok=True)
        log.info("Created input directory %s", input_dir)
        return []
    return sorted(
        (p for p in input_dir.iterdir() if p.is_file() and p.suffix.lower() == ".csv"),
        key=lambda p: p.name,
    )


def classify_file(path: Path) -> str | None:
    name = path.name.lower()
    for record_type in RECORD_TYPES:
        if record_type in name:
            return record_type
    return None


class EtlOrchestrator:
    def __init__(
        self,
        store: Store,
        config: PipelineConfig,
        rejects: RejectWriter | None = None,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._log = logger or log
        self._subscribers: list[ProgressCallback] = []
        writer = BatchWriter(store, config, rejects=rejects, logger=self._log, sleep=sleep)
        self._dispatcher = BatchDispatcher(
            writer, config, on_progress=self._emit_progress, logger=self._log,
        )
        if not config.relax_foreign_keys:
            self._log.warning(
                "relax_foreign_keys is off: inserts run with FK checks, so rows whose "
                "parents are not yet committed fail instead of loading"
            )

    def on_progress(self, callback: ProgressCallback) -> None:
        """Register callback(BatchProgress) to run after every batch."""
        self._subscribers.append(callback)

    def _emit_progress(self, progress: BatchProgress) -> None:
        for callback in self._subscribers:
            try:
                callback(progress)
            except Exception:
                self._log.exception("Progress subscriber failed")

    async def process_file(self, path: Path, record_type: str | None = None) -> FileResult | None:
        """Process one file; returns None when its type cannot be determined."""
        record_type = record_type or classify_file(path)
        if record_type is None:
            self._log.warning("Skipping %s: cannot tell caregiver from carelog by name", path.name)
            return None
        return await self._dispatcher.process_file(path, record_type)

    async def process_files_parallel(self, files: list[Path], record_type: str) -> list[FileResult]:
        """Process files with at most max_concurrency running; results in input order."""
        limiter = ConcurrencyLimiter(self._config.max_concurrency)
        tasks = [limiter.submit(self._dispatcher.process_file, path, record_type) for path in files]
        await limiter.drain()
        return [task.result() for task in tasks]

    async def process_all_files(self, input_dir: Path) -> list[FileResult]:
        files = discover_csv_files(input_dir)
        if not files:
            self._log.warning("No CSV files found in %s", input_dir)
            return []
        self._log.info("Found %d CSV files in %s", len(files), input_dir)

        if not (self._config.enable_parallel_processing and len(files) > 1):
            results: list[FileResult] = []
            for path in files:
                result = await self.process_file(path)
                if result is not None:
                    results.append(result)
            return results

        groups: dict[str, list[Path]] = {CAREGIVER: [], CARELOG: []}
        for path in files:
            record_type = classify_file(path)
            if record_type is None:
                self._log.warning("Skipping %s: cannot tell caregiver from carelog by name", path.name)
                continue
            groups[record_type].append(path)
        self._log.info(
            "Parallel run: %d caregiver files, %d carelog files",
            len(groups[CAREGIVER]), len(groups[CARELOG]),
        )
        caregiver_results, carelog_results = await asyncio.gather(
            self.process_files_parallel(groups[CAREGIVER], CAREGIVER),
            self.process_files_parallel(groups[CARELOG], CARELOG),
        )
        return caregiver_results + carelog_results
