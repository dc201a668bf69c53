"""carelog_etl.batcher

Streams one CSV file into fixed-size batches and feeds them to the batch
writer through a ConcurrencyLimiter.

Batches are numbered from 1 and submitted in file order. A file with N rows
and batch size B yields ceil(N / B) batches. The file is reported complete
only after every submitted batch has finished.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Callable, Mapping

from carelog_etl.config import PipelineConfig
from carelog_etl.errors import RowSourceError, describe
from carelog_etl.limiter import ConcurrencyLimiter
from carelog_etl.row_source import read_rows
from carelog_etl.summary import BatchProgress, FileResult
from carelog_etl.writer import BatchOutcome, BatchWriter

log = logging.getLogger(__name__)

ProgressCallback = Callable[[BatchProgress], Any]


async def batch_rows(
    rows: AsyncIterable[Mapping[str, Any]],
    batch_size: int,
) -> AsyncIterator[list[Mapping[str, Any]]]:
    """Group rows into lists of batch_size; the final list may be shorter."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    batch: list[Mapping[str, Any]] = []
    async for row in rows:
        batch.append(row)
        if len(batch) == batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


class BatchDispatcher:
    def __init__(
        self,
        writer: BatchWriter,
        config: PipelineConfig,
        on_progress: ProgressCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._writer = writer
        self._config = config
        self._on_progress = on_progress
        self._log = logger or log

    async def process_file(
        self,
        path: Path,
        record_type: str,
        rows: AsyncIterable[Mapping[str, Any]] | None = None,
    ) -> FileResult:
        """Write every row of path; row-level and batch-level failures end up in the result.

        rows defaults to read_rows(path, record_type). A RowSourceError stops
        reading; batches already submitted still finish and are counted.
        """
        started = time.monotonic()
        result = FileResult(file_path=str(path), record_type=record_type)
        limiter = ConcurrencyLimiter(self._config.max_concurrency)
        max_pending = self._config.max_pending_batches
        source = rows if rows is not None else read_rows(path, record_type)
        self._log.info(
            "Processing %s as %s (batch_size=%d, max_concurrency=%d)",
            path.name, record_type, self._config.batch_size, self._config.max_concurrency,
        )

        batch_number = 0
        try:
            async for batch in batch_rows(source, self._config.batch_size):
                batch_number += 1
                result.total_rows += len(batch)
                limiter.submit(self._run_batch, path, record_type, batch, batch_number, result)
                if max_pending is not None:
                    await limiter.wait_pending_below(max_pending)
        except RowSourceError as exc:
            result.errors.append(f"{path.name}: {exc}")
            self._log.error("Reading %s failed: %s", path.name, exc)
        finally:
            await limiter.drain()

        result.processing_time_ms = (time.monotonic() - started) * 1000
        self._log.info(
            "Finished %s: %d rows, %d inserted, %d skipped, %d rejected, %d failed in %.0fms",
            path.name, result.total_rows, result.processed_rows, result.skipped_rows,
            result.rejected_rows, result.failed_rows, result.processing_time_ms,
        )
        return result

    async def _run_batch(
        self,
        path: Path,
        record_type: str,
        batch: list[Mapping[str, Any]],
        batch_number: int,
        result: FileResult,
    ) -> None:
        started = time.monotonic()
        try:
            outcome = await self._writer.write_batch(
                record_type, batch, batch_number, source_file=path.name,
            )
        except Exception as exc:
            self._log.exception("Batch %d of %s crashed", batch_number, path.name)
            outcome = BatchOutcome(
                batch_number=batch_number,
                record_type=record_type,
                rows=len(batch),
                failed_rows=len(batch),
                errors=[f"Batch {batch_number}: {describe(exc)}"],
            )
        elapsed_ms = (time.monotonic() - started) * 1000
        _merge(result, outcome)
        if self._config.enable_progress_tracking:
            self._log.info(
                "%s batch %d: inserted %d/%d rows in %.0fms",
                path.name, batch_number, outcome.inserted, len(batch), elapsed_ms,
            )
            self._report_progress(BatchProgress(
                file_path=str(path),
                batch_number=batch_number,
                rows=len(batch),
                inserted=outcome.inserted,
                failed=outcome.failed_rows,
                elapsed_ms=elapsed_ms,
            ))

    def _report_progress(self, progress: BatchProgress) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(progress)
        except Exception:
            self._log.exception("Progress callback failed for batch %d", progress.batch_number)


def _merge(result: FileResult, outcome: BatchOutcome) -> None:
    result.batches_processed += 1
    result.processed_rows += outcome.inserted
    result.failed_rows += outcome.failed_rows
    result.rejected_rows += outcome.rejected_rows
    result.skipped_duplicates += outcome.skipped_duplicates
    result.skipped_missing_parent += outcome.skipped_missing_parent
    result.skipped_carelog_ids.extend(outcome.skipped_carelog_ids)
    result.errors.extend(outcome.errors)
