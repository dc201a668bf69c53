"""Unit test fixtures: an in-memory Store and row builders.

InMemoryStore implements the same verbs as PostgresStore over plain dicts.
Transactions snapshot the tables and restore them on error. Tests inject
failures with fail_insert() / fail_upsert() and inspect the call log.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable

import pytest

from carelog_etl.config import PipelineConfig
from carelog_etl.errors import TransactionTimeoutError
from carelog_etl.records import (
    AGENCY,
    CAREGIVER,
    CARELOG,
    FRANCHISOR,
    LOCATION,
    natural_key,
)
from carelog_etl.retry import RetryPolicy


class DuplicateKeyError(Exception):
    """Raised by the fake when skip_duplicates is off and a key already exists."""


class ForeignKeyError(Exception):
    """Raised by the fake when a carelog names an absent caregiver with FK checks on."""


# ---------------------------------------------------------------------------
# Fake store
# ---------------------------------------------------------------------------

class InMemorySession:
    def __init__(self, store: "InMemoryStore", in_transaction: bool = False) -> None:
        self._store = store
        self.in_transaction = in_transaction
        self.fk_enabled = True

    async def upsert_if_absent(self, kind: str, entity: Any) -> bool:
        self._store.calls.append(("upsert", kind, natural_key(kind, entity)))
        self._store._maybe_fail("upsert", kind, [entity])
        table = self._store.tables[kind]
        key = natural_key(kind, entity)
        if key in table:
            return False
        table[key] = entity
        return True

    async def find_existing_ids(self, kind: str, ids) -> list:
        wanted = list(ids)
        self._store.calls.append(("find", kind, wanted))
        self._store._maybe_fail("find", kind, wanted)
        table = self._store.tables[kind]
        return sorted(k for k in set(wanted) if k in table)

    async def bulk_insert(self, kind: str, records, skip_duplicates: bool) -> int:
        records = list(records)
        self._store.calls.append(("insert", kind, [natural_key(kind, r) for r in records]))
        self._store.insert_fk_states.append(self.fk_enabled)
        self._store._maybe_fail("insert", kind, records)
        table = self._store.tables[kind]
        inserted = 0
        for record in records:
            key = natural_key(kind, record)
            if key in table:
                if skip_duplicates:
                    continue
                raise DuplicateKeyError(f"duplicate key {key!r} in {kind}")
            if (
                kind == CARELOG
                and self.fk_enabled
                and record.caregiver_id not in self._store.tables[CAREGIVER]
            ):
                raise ForeignKeyError(f"caregiver {record.caregiver_id} not present")
            table[key] = record
            inserted += 1
        return inserted

    async def set_foreign_key_enforcement(self, enabled: bool) -> None:
        self._store.calls.append(("fk", "", enabled))
        self.fk_enabled = enabled


class InMemoryStore:
    def __init__(self) -> None:
        self.tables: dict[str, dict[Any, Any]] = {
            kind: {} for kind in (FRANCHISOR, AGENCY, LOCATION, CAREGIVER, CARELOG)
        }
        self.calls: list[tuple[str, str, Any]] = []
        self.insert_fk_states: list[bool] = []
        self.sessions: list[InMemorySession] = []
        self.transactions = 0
        self.rollbacks = 0
        self._failures: list[dict[str, Any]] = []

    # failure injection ----------------------------------------------------

    def fail_insert(
        self,
        kind: str,
        exc: Exception | Callable[[], Exception],
        times: int | None = None,
        when: Callable[[list], bool] | None = None,
    ) -> None:
        """Make bulk_insert(kind, ...) raise exc; `times` None means every call."""
        self._failures.append({"op": "insert", "kind": kind, "exc": exc, "times": times, "when": when})

    def fail_upsert(
        self,
        kind: str,
        exc: Exception | Callable[[], Exception],
        times: int | None = None,
        when: Callable[[list], bool] | None = None,
    ) -> None:
        self._failures.append({"op": "upsert", "kind": kind, "exc": exc, "times": times, "when": when})

    def fail_find(
        self,
        kind: str,
        exc: Exception | Callable[[], Exception],
        times: int | None = None,
    ) -> None:
        self._failures.append({"op": "find", "kind": kind, "exc": exc, "times": times, "when": None})

    def _maybe_fail(self, op: str, kind: str, records: list) -> None:
        for failure in self._failures:
            if failure["op"] != op or failure["kind"] != kind:
                continue
            if failure["times"] is not None and failure["times"] <= 0:
                continue
            if failure["when"] is not None and not failure["when"](records):
                continue
            if failure["times"] is not None:
                failure["times"] -= 1
            exc = failure["exc"]
            raise exc if isinstance(exc, BaseException) else exc()

    # Store verbs ----------------------------------------------------------

    @asynccontextmanager
    async def session(self):
        session = InMemorySession(self)
        self.sessions.append(session)
        yield session

    async def run_in_transaction(self, fn, options):
        self.transactions += 1
        snapshot = {k: dict(v) for k, v in self.tables.items()}
        session = InMemorySession(self, in_transaction=True)
        self.sessions.append(session)
        try:
            return await fn(session)
        except BaseException:
            self.tables = snapshot
            self.rollbacks += 1
            raise

    # inspection -----------------------------------------------------------

    def ids(self, kind: str) -> list:
        return sorted(self.tables[kind])

    def calls_of(self, op: str, kind: str | None = None) -> list:
        return [c for c in self.calls if c[0] == op and (kind is None or c[1] == kind)]


class PooledStore(InMemoryStore):
    """InMemoryStore with a fixed number of connections, like PostgresStore's pool.

    A transaction that waits longer than options.max_wait_ms for a
    connection raises TransactionTimeoutError. Every checkout yields once so
    concurrent batches interleave.
    """

    def __init__(self, size: int) -> None:
        super().__init__()
        self.size = size
        self.peak_in_use = 0
        self._in_use = 0
        self._connections = asyncio.Semaphore(size)

    async def _checkout(self, timeout: float | None = None) -> None:
        if timeout is None:
            await self._connections.acquire()
        else:
            try:
                await asyncio.wait_for(self._connections.acquire(), timeout)
            except asyncio.TimeoutError as exc:
                raise TransactionTimeoutError(
                    f"no connection available within {timeout * 1000:.0f}ms"
                ) from exc
        self._in_use += 1
        self.peak_in_use = max(self.peak_in_use, self._in_use)
        await asyncio.sleep(0)

    def _checkin(self) -> None:
        self._in_use -= 1
        self._connections.release()

    @asynccontextmanager
    async def session(self):
        await self._checkout()
        try:
            async with super().session() as session:
                yield session
        finally:
            self._checkin()

    async def run_in_transaction(self, fn, options):
        await self._checkout(options.max_wait_ms / 1000)
        try:
            return await super().run_in_transaction(fn, options)
        finally:
            self._checkin()


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------

def make_caregiver_row(caregiver_id: str, **overrides: Any) -> dict[str, str]:
    row = {
        "franchisor_id": "F1",
        "franchisor_name": "Franchisor One",
        "agency_id": "A1",
        "agency_name": "Agency One",
        "subdomain": "agency-one",
        "profile_id": f"P-{caregiver_id}",
        "caregiver_id": caregiver_id,
        "external_id": "",
        "first_name": "Jo",
        "last_name": "Smith",
        "email": f"{caregiver_id}@example.com",
        "phone_number": "555-0100",
        "gender": "female",
        "applicant": "false",
        "birthday_date": "1990-04-01",
        "onboarding_date": "2023-01-15",
        "location_name": "North",
        "locations_id": "L1",
        "applicant_status": "Hired",
        "status": "active",
    }
    row.update(overrides)
    return row


def make_carelog_row(carelog_id: str, caregiver_id: str, **overrides: Any) -> dict[str, str]:
    row = {
        "franchisor_id": "F1",
        "agency_id": "A1",
        "carelog_id": carelog_id,
        "caregiver_id": caregiver_id,
        "parent_id": "None",
        "start_datetime": "2024-03-01T08:00:00Z",
        "end_datetime": "2024-03-01T12:00:00Z",
        "clock_in_actual_datetime": "2024-03-01T08:02:00Z",
        "clock_out_actual_datetime": "2024-03-01T11:58:00Z",
        "clock_in_method": "app",
        "clock_out_method": "app",
        "status": "completed",
        "split": "false",
        "documentation": "",
        "general_comment_char_count": "0",
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    """asyncio.sleep stand-in that records the requested delay and returns at once."""
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(
        batch_size=100,
        max_concurrency=2,
        deadlock_retry=RetryPolicy(max_retries=3, base_delay_ms=1000, max_delay_ms=10000),
    )


@pytest.fixture
def caregiver_row():
    return make_caregiver_row


@pytest.fixture
def carelog_row():
    return make_carelog_row


@pytest.fixture
def pooled_store():
    return PooledStore
