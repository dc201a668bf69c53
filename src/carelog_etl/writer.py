"""carelog_etl.writer

Batch writer: turns one batch of raw CSV rows into store writes.

Caregiver batches, per attempt:
  1. Upsert each distinct franchisor / agency / location individually on an
     autocommit session. A failed upsert falls back to an existence check;
     an entity that still is not there is logged and the batch goes on.
  2. Look up which caregiver ids already exist (sorted id list) and split
     the batch into new and duplicate records. Duplicates are counted, never
     re-inserted.
  3. Bulk-insert the new records (sorted by id) with foreign-key enforcement
     relaxed, inside a transaction when enable_transactions is set.
  A failure that survives the deadlock retry fails the whole batch.

Carelog batches, per attempt (all on one session / transaction):
  1. Drop records whose caregiver is not in the store; their ids go on the
     skipped list.
  2. Same duplicate reconciliation as caregivers.
  3. Bulk-insert with skip-duplicates always on.
  A failure that survives the deadlock retry splits the batch into ten
  chunks, each retried on its own. A failing chunk counts its rows as failed
  and does not stop its siblings; chunks are never split again.

Rows the transformer rejects are excluded before any of this, counted and
written to the rejects sink.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

from carelog_etl.config import PipelineConfig
from carelog_etl.errors import describe
from carelog_etl.records import (
    CAREGIVER,
    CARELOG,
    DEPENDENCY_KINDS,
    Caregiver,
    Carelog,
    extract_agencies,
    extract_franchisors,
    extract_locations,
    natural_key,
    transform_rows,
)
from carelog_etl.rejects import RejectWriter
from carelog_etl.retry import DeadlockRetry
from carelog_etl.store import Store, StoreSession

log = logging.getLogger(__name__)

CHUNK_COUNT = 10
MIN_CHUNK_SIZE = 10
# How many skipped ids to show in a single log line.
_LOG_SAMPLE = 10


@dataclass
class BatchOutcome:
    batch_number: int
    record_type: str
    rows: int
    inserted: int = 0
    attempted: int = 0
    failed_rows: int = 0
    rejected_rows: int = 0
    skipped_duplicates: int = 0
    skipped_carelog_ids: list[str] = field(default_factory=list)
    dependencies_created: dict[str, int] = field(default_factory=dict)
    dependency_failures: list[str] = field(default_factory=list)
    attempts: int = 0
    chunked: bool = False
    elapsed_ms: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def skipped_missing_parent(self) -> int:
        return len(self.skipped_carelog_ids)


@dataclass
class _WriteResult:
    """What one successful attempt of a write step did."""

    inserted: int = 0
    attempted: int = 0
    duplicates: int = 0
    skipped_ids: list[str] = field(default_factory=list)
    dependencies_created: dict[str, int] = field(default_factory=dict)
    dependency_failures: list[str] = field(default_factory=list)


def split_chunks(records: Sequence[Any], chunks: int = CHUNK_COUNT) -> list[list[Any]]:
    """Split records into about `chunks` equal slices of at least MIN_CHUNK_SIZE."""
    if not records:
        return []
    size = max(MIN_CHUNK_SIZE, math.ceil(len(records) / chunks))
    return [list(records[i:i + size]) for i in range(0, len(records), size)]


class BatchWriter:
    def __init__(
        self,
        store: Store,
        config: PipelineConfig,
        rejects: RejectWriter | None = None,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._config = config
        self._rejects = rejects
        self._log = logger or log
        self._sleep = sleep

    async def write_batch(
        self,
        record_type: str,
        rows: Sequence[Mapping[str, Any]],
        batch_number: int,
        source_file: str = "",
    ) -> BatchOutcome:
        if record_type == CAREGIVER:
            return await self.write_caregiver_batch(rows, batch_number, source_file)
        if record_type == CARELOG:
            return await self.write_carelog_batch(rows, batch_number, source_file)
        raise ValueError(f"unknown record type: {record_type!r}")

    # -----------------------------------------------------------------------
    # Shared helpers
    # -----------------------------------------------------------------------

    def _transform(
        self,
        rows: Sequence[Mapping[str, Any]],
        record_type: str,
        outcome: BatchOutcome,
        source_file: str,
    ) -> list[Any]:
        records, rejections = transform_rows(rows, record_type)
        if rejections:
            outcome.rejected_rows = len(rejections)
            self._log.warning(
                "Batch %d: %d of %d rows rejected (first reason: %s)",
                outcome.batch_number, len(rejections), len(rows), rejections[0].reason,
            )
            if self._rejects is not None:
                for rejection in rejections:
                    self._rejects.write(rejection.row, rejection.reason, source_file)
        return records

    def _retry(self, label: str) -> DeadlockRetry:
        return DeadlockRetry(
            self._config.deadlock_retry,
            label=label,
            logger=self._log,
            sleep=self._sleep,
        )

    async def _insert_relaxed(
        self,
        session: StoreSession,
        kind: str,
        records: list[Any],
        skip_duplicates: bool,
        in_transaction: bool,
    ) -> int:
        """Bulk insert with FK enforcement off for the duration of the insert.

        Inside a transaction a failed insert leaves the session unusable
        until rollback, and rollback undoes the relaxation, so enforcement is
        only restored explicitly on success or on an autocommit session.
        """
        if not self._config.relax_foreign_keys:
            return await session.bulk_insert(kind, records, skip_duplicates)
        await session.set_foreign_key_enforcement(False)
        restored = False
        try:
            inserted = await session.bulk_insert(kind, records, skip_duplicates)
            await session.set_foreign_key_enforcement(True)
            restored = True
            return inserted
        finally:
            if not restored and not in_transaction:
                try:
                    await session.set_foreign_key_enforcement(True)
                except Exception as exc:
                    self._log.warning("Could not restore FK enforcement: %s", describe(exc))

    async def _split_existing(
        self,
        session: StoreSession,
        kind: str,
        records: list[Any],
    ) -> tuple[list[Any], int]:
        """Return (records whose id is not yet stored, sorted by id; duplicate count).

        Repeats of one new id inside the batch are all kept; the insert's
        conflict handling decides which of them lands.
        """
        ids = sorted({natural_key(kind, r) for r in records})
        existing = set(await session.find_existing_ids(kind, ids))
        new = sorted(
            (r for r in records if natural_key(kind, r) not in existing),
            key=lambda r: natural_key(kind, r),
        )
        return new, len(records) - len(new)

    # -----------------------------------------------------------------------
    # Caregiver path
    # -----------------------------------------------------------------------

    async def write_caregiver_batch(
        self,
        rows: Sequence[Mapping[str, Any]],
        batch_number: int,
        source_file: str = "",
    ) -> BatchOutcome:
        started = time.monotonic()
        outcome = BatchOutcome(batch_number=batch_number, record_type=CAREGIVER, rows=len(rows))
        self._log.info("Batch %d: starting with %d caregiver rows", batch_number, len(rows))

        caregivers = self._transform(rows, CAREGIVER, outcome, source_file)
        franchisors = extract_franchisors(rows)
        agencies = extract_agencies(rows)
        locations = extract_locations(rows)
        self._log.debug(
            "Batch %d dependencies: %d franchisors, %d agencies, %d locations",
            batch_number, len(franchisors), len(agencies), len(locations),
        )

        retry = self._retry(f"Batch {batch_number} caregivers")

        async def step() -> _WriteResult:
            return await self._write_caregivers(
                batch_number, franchisors, agencies, locations, caregivers,
            )

        try:
            result = await retry.run(step)
        except Exception as exc:
            outcome.failed_rows = len(caregivers)
            outcome.errors.append(f"Batch {batch_number}: {describe(exc)}")
            self._log.error("Batch %d: caregiver insert failed: %s", batch_number, describe(exc))
        else:
            self._apply(outcome, result)
            self._log_inserted(outcome, len(caregivers))
        outcome.attempts = retry.attempts
        outcome.elapsed_ms = (time.monotonic() - started) * 1000
        return outcome

    async def _ensure_dependencies(
        self,
        session: StoreSession,
        groups: Sequence[tuple[str, Sequence[Any]]],
    ) -> tuple[dict[str, int], list[str]]:
        created = {kind: 0 for kind, _ in groups}
        failures: list[str] = []
        for kind, entities in groups:
            for entity in entities:
                key = natural_key(kind, entity)
                try:
                    if await session.upsert_if_absent(kind, entity):
                        created[kind] += 1
                except Exception as exc:
                    try:
                        present = await session.find_existing_ids(kind, [key])
                    except Exception as lookup_exc:
                        self._log.error(
                            "Could not check %s %s after failed create: %s",
                            kind, key, describe(lookup_exc),
                        )
                        present = []
                    if present:
                        continue
                    failures.append(f"{kind} {key}")
                    self._log.error("Failed to create %s %s: %s", kind, key, describe(exc))
        return created, failures

    async def _write_caregivers(
        self,
        batch_number: int,
        franchisors: list[Any],
        agencies: list[Any],
        locations: list[Any],
        caregivers: list[Caregiver],
    ) -> _WriteResult:
        result = _WriteResult()
        skip_duplicates = self._config.skip_duplicates
        in_transaction = self._config.enable_transactions
        async with self._store.session() as session:
            result.dependencies_created, result.dependency_failures = (
                await self._ensure_dependencies(
                    session,
                    list(zip(DEPENDENCY_KINDS, (franchisors, agencies, locations))),
                )
            )

            new, result.duplicates = await self._split_existing(session, CAREGIVER, caregivers)
            result.attempted = len(new)
            if result.duplicates:
                self._log.warning(
                    "Batch %d: %d duplicate caregivers (%.2f%%)",
                    batch_number, result.duplicates,
                    result.duplicates / len(caregivers) * 100,
                )
            if not new:
                if caregivers:
                    self._log.warning(
                        "Batch %d: no new caregivers, all are duplicates", batch_number,
                    )
                return result

            if not in_transaction:
                result.inserted = await self._insert_relaxed(
                    session, CAREGIVER, new, skip_duplicates, in_transaction=False,
                )
                return result

        # Autocommit connection released; the transaction takes its own.
        async def insert(tx: StoreSession) -> int:
            return await self._insert_relaxed(
                tx, CAREGIVER, new, skip_duplicates, in_transaction=True,
            )
        result.inserted = await self._store.run_in_transaction(
            insert, self._config.transaction,
        )
        return result

    # -----------------------------------------------------------------------
    # Carelog path
    # -----------------------------------------------------------------------

    async def write_carelog_batch(
        self,
        rows: Sequence[Mapping[str, Any]],
        batch_number: int,
        source_file: str = "",
    ) -> BatchOutcome:
        started = time.monotonic()
        outcome = BatchOutcome(batch_number=batch_number, record_type=CARELOG, rows=len(rows))
        carelogs = self._transform(rows, CARELOG, outcome, source_file)
        self._log.info(
            "Batch %d: transformed %d carelogs from %d rows",
            batch_number, len(carelogs), len(rows),
        )
        if not carelogs:
            outcome.elapsed_ms = (time.monotonic() - started) * 1000
            return outcome

        retry = self._retry(f"Batch {batch_number} carelogs")
        try:
            result = await retry.run(lambda: self._carelog_step(batch_number, carelogs))
        except Exception as exc:
            self._log.error(
                "Batch %d: carelog insert failed (%s); retrying in chunks",
                batch_number, describe(exc),
            )
            outcome.attempts = retry.attempts
            await self._write_carelog_chunks(batch_number, carelogs, outcome)
        else:
            outcome.attempts = retry.attempts
            self._apply(outcome, result)
            self._log_inserted(outcome, len(carelogs))
        outcome.elapsed_ms = (time.monotonic() - started) * 1000
        return outcome

    async def _write_carelog_chunks(
        self,
        batch_number: int,
        carelogs: list[Carelog],
        outcome: BatchOutcome,
    ) -> None:
        outcome.chunked = True
        for index, chunk in enumerate(split_chunks(carelogs), start=1):
            retry = self._retry(f"Batch {batch_number} chunk {index}")
            try:
                result = await retry.run(
                    lambda chunk=chunk: self._carelog_step(batch_number, chunk)
                )
            except Exception as exc:
                outcome.failed_rows += len(chunk)
                outcome.errors.append(f"Batch {batch_number} Chunk {index}: {describe(exc)}")
                self._log.error("Batch %d chunk %d failed: %s", batch_number, index, describe(exc))
                continue
            self._apply(outcome, result)
            self._log.info(
                "Batch %d chunk %d: inserted %d/%d",
                batch_number, index, result.inserted, len(chunk),
            )
        self._log.info(
            "Batch %d: inserted %d/%d after chunking",
            batch_number, outcome.inserted, len(carelogs),
        )

    async def _carelog_step(self, batch_number: int, carelogs: list[Carelog]) -> _WriteResult:
        if self._config.enable_transactions:
            async def write(tx: StoreSession) -> _WriteResult:
                return await self._write_carelogs(tx, batch_number, carelogs, in_transaction=True)
            return await self._store.run_in_transaction(write, self._config.transaction)
        async with self._store.session() as session:
            return await self._write_carelogs(session, batch_number, carelogs, in_transaction=False)

    async def _write_carelogs(
        self,
        session: StoreSession,
        batch_number: int,
        carelogs: list[Carelog],
        in_transaction: bool,
    ) -> _WriteResult:
        result = _WriteResult()
        caregiver_ids = sorted({c.caregiver_id for c in carelogs})
        present = set(await session.find_existing_ids(CAREGIVER, caregiver_ids))
        self._log.debug(
            "Batch %d: %d of %d referenced caregivers exist",
            batch_number, len(present), len(caregiver_ids),
        )

        valid: list[Carelog] = []
        for carelog in carelogs:
            if carelog.caregiver_id in present:
                valid.append(carelog)
            else:
                result.skipped_ids.append(carelog.carelog_id)
        if result.skipped_ids:
            sample = ", ".join(result.skipped_ids[:_LOG_SAMPLE])
            more = "..." if len(result.skipped_ids) > _LOG_SAMPLE else ""
            self._log.warning(
                "Batch %d: skipping %d carelogs with missing caregivers: %s%s",
                batch_number, len(result.skipped_ids), sample, more,
            )
        if not valid:
            return result

        new, result.duplicates = await self._split_existing(session, CARELOG, valid)
        result.attempted = len(new)
        if not new:
            self._log.warning("Batch %d: no new carelogs, all are duplicates", batch_number)
            return result

        result.inserted = await self._insert_relaxed(
            session, CARELOG, new, skip_duplicates=True, in_transaction=in_transaction,
        )
        return result

    # -----------------------------------------------------------------------
    # Accounting
    # -----------------------------------------------------------------------

    def _apply(self, outcome: BatchOutcome, result: _WriteResult) -> None:
        outcome.inserted += result.inserted
        outcome.attempted += result.attempted
        # Rows the store itself skipped (a concurrent batch got there first)
        # are duplicates too.
        outcome.skipped_duplicates += result.duplicates + (result.attempted - result.inserted)
        outcome.skipped_carelog_ids.extend(result.skipped_ids)
        for kind, count in result.dependencies_created.items():
            outcome.dependencies_created[kind] = outcome.dependencies_created.get(kind, 0) + count
        outcome.dependency_failures.extend(result.dependency_failures)

    def _log_inserted(self, outcome: BatchOutcome, records: int) -> None:
        skipped = records - outcome.inserted
        self._log.info(
            "Batch %d: inserted %d, skipped %d (%.2f%%)",
            outcome.batch_number, outcome.inserted, skipped,
            skipped / records * 100 if records else 0.0,
        )
