"""carelog_etl.store

The persistent-store capability used by the batch writer, and its
PostgreSQL implementation (psycopg 3 async + psycopg_pool).

The writer only ever calls these verbs:

  StoreSession.upsert_if_absent(kind, entity)          -> bool (created?)
  StoreSession.find_existing_ids(kind, ids)            -> sorted list of present keys
  StoreSession.bulk_insert(kind, records, skip_dupes)  -> rows inserted
  StoreSession.set_foreign_key_enforcement(enabled)
  Store.session()                                      -> autocommit session
  Store.run_in_transaction(fn, options)                -> fn(session) in one transaction

Foreign-key relaxation uses session_replication_role, which needs a role
allowed to set it (superuser or, on PG15+, a role granted SET on it).
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    Protocol,
    Sequence,
    TypeVar,
)

import psycopg
from psycopg import sql
from psycopg.pq import TransactionStatus
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from carelog_etl.config import TransactionOptions
from carelog_etl.errors import FatalConfigurationError, TransactionTimeoutError
from carelog_etl.records import (
    AGENCY,
    CAREGIVER,
    CARELOG,
    FRANCHISOR,
    KEY_COLUMNS,
    LOCATION,
    Agency,
    Caregiver,
    Carelog,
    Franchisor,
    Location,
    natural_key,
    record_columns,
    record_values,
)

T = TypeVar("T")

log = logging.getLogger(__name__)

# entity kind -> (table, record class)
ENTITY_TABLES: dict[str, tuple[str, type]] = {
    FRANCHISOR: ("franchisor", Franchisor),
    AGENCY: ("agency", Agency),
    LOCATION: ("location", Location),
    CAREGIVER: ("caregiver", Caregiver),
    CARELOG: ("carelog", Carelog),
}

_ISOLATION_LEVELS = {
    "read_committed": psycopg.IsolationLevel.READ_COMMITTED,
    "repeatable_read": psycopg.IsolationLevel.REPEATABLE_READ,
    "serializable": psycopg.IsolationLevel.SERIALIZABLE,
}


# ---------------------------------------------------------------------------
# Capability protocol
# ---------------------------------------------------------------------------

class StoreSession(Protocol):
    async def upsert_if_absent(self, kind: str, entity: Any) -> bool: ...

    async def find_existing_ids(self, kind: str, ids: Iterable[Any]) -> list[Any]: ...

    async def bulk_insert(
        self, kind: str, records: Sequence[Any], skip_duplicates: bool
    ) -> int: ...

    async def set_foreign_key_enforcement(self, enabled: bool) -> None: ...


class Store(Protocol):
    def session(self) -> Any:
        """Async context manager yielding an autocommit StoreSession."""
        ...

    async def run_in_transaction(
        self,
        fn: Callable[[StoreSession], Awaitable[T]],
        options: TransactionOptions,
    ) -> T: ...


# ---------------------------------------------------------------------------
# SQL builders
# ---------------------------------------------------------------------------

def _insert_sql(kind: str, skip_duplicates: bool, returning: bool) -> sql.Composed:
    table, record_cls = ENTITY_TABLES[kind]
    cols = record_columns(record_cls)
    keys = KEY_COLUMNS[kind]
    query = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({values})").format(
        table=sql.Identifier(table),
        cols=sql.SQL(", ").join(map(sql.Identifier, cols)),
        values=sql.SQL(", ").join(sql.Placeholder() * len(cols)),
    )
    if skip_duplicates:
        query += sql.SQL(" ON CONFLICT ({keys}) DO NOTHING").format(
            keys=sql.SQL(", ").join(map(sql.Identifier, keys)),
        )
    if returning:
        query += sql.SQL(" RETURNING {keys}").format(
            keys=sql.SQL(", ").join(map(sql.Identifier, keys)),
        )
    return query


def _select_existing_sql(kind: str) -> sql.Composed:
    table, _ = ENTITY_TABLES[kind]
    keys = KEY_COLUMNS[kind]
    key_list = sql.SQL(", ").join(map(sql.Identifier, keys))
    if len(keys) == 1:
        return sql.SQL(
            "SELECT {key} FROM {table} WHERE {key} = ANY(%s) ORDER BY {key}"
        ).format(key=sql.Identifier(keys[0]), table=sql.Identifier(table))
    return sql.SQL(
        "SELECT {keys} FROM {table} WHERE ({keys}) IN "
        "(SELECT * FROM unnest({arrays})) ORDER BY {keys}"
    ).format(
        keys=key_list,
        table=sql.Identifier(table),
        arrays=sql.SQL(", ").join(sql.SQL("%s::text[]") for _ in keys),
    )


# ---------------------------------------------------------------------------
# PostgreSQL session
# ---------------------------------------------------------------------------

class PostgresSession:
    """StoreSession bound to one pooled connection."""

    def __init__(self, conn: psycopg.AsyncConnection) -> None:
        self._conn = conn
        self.foreign_keys_relaxed = False

    async def upsert_if_absent(self, kind: str, entity: Any) -> bool:
        cur = await self._conn.execute(
            _insert_sql(kind, skip_duplicates=True, returning=False),
            record_values(entity),
        )
        return cur.rowcount == 1

    async def find_existing_ids(self, kind: str, ids: Iterable[Any]) -> list[Any]:
        wanted = sorted(set(ids))
        if not wanted:
            return []
        keys = KEY_COLUMNS[kind]
        if len(keys) == 1:
            params: tuple[Any, ...] = (wanted,)
        else:
            params = tuple([k[i] for k in wanted] for i in range(len(keys)))
        cur = await self._conn.execute(_select_existing_sql(kind), params)
        rows = await cur.fetchall()
        if len(keys) == 1:
            return [row[0] for row in rows]
        return [tuple(row) for row in rows]

    async def bulk_insert(
        self, kind: str, records: Sequence[Any], skip_duplicates: bool
    ) -> int:
        if not records:
            return 0
        ordered = sorted(records, key=lambda r: natural_key(kind, r))
        inserted = 0
        async with self._conn.cursor() as cur:
            await cur.executemany(
                _insert_sql(kind, skip_duplicates=skip_duplicates, returning=True),
                [record_values(r) for r in ordered],
                returning=True,
            )
            while True:
                inserted += len(await cur.fetchall())
                if not cur.nextset():
                    break
        return inserted

    async def set_foreign_key_enforcement(self, enabled: bool) -> None:
        role = "DEFAULT" if enabled else "replica"
        await self._conn.execute(f"SET session_replication_role = {role}")
        self.foreign_keys_relaxed = not enabled


async def _reset_connection(conn: psycopg.AsyncConnection) -> None:
    # Isolation level and replication role outlive the borrower that set them.
    await conn.set_isolation_level(None)
    await conn.execute("RESET session_replication_role")


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------

class PostgresStore:
    """Connection-pooled Store; use `async with PostgresStore(dsn) as store:`."""

    def __init__(
        self,
        dsn: str,
        max_size: int = 10,
        min_size: int = 1,
        open_timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._dsn = dsn
        self._max_size = max(max_size, min_size)
        self._min_size = min_size
        self._open_timeout = open_timeout
        self._log = logger or log
        self._pool: AsyncConnectionPool | None = None

    async def open(self) -> None:
        pool = AsyncConnectionPool(
            self._dsn,
            min_size=self._min_size,
            max_size=self._max_size,
            kwargs={"autocommit": True},
            reset=_reset_connection,
            open=False,
        )
        try:
            await pool.open(wait=True, timeout=self._open_timeout)
        except (PoolTimeout, psycopg.Error) as exc:
            await pool.close()
            raise FatalConfigurationError(f"cannot open store connection: {exc}") from exc
        self._pool = pool
        self._log.info("Store pool open (min=%d max=%d)", self._min_size, self._max_size)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._log.info("Store pool closed")

    async def __aenter__(self) -> "PostgresStore":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _require_pool(self) -> AsyncConnectionPool:
        if self._pool is None:
            raise RuntimeError("PostgresStore is not open")
        return self._pool

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PostgresSession]:
        async with self._require_pool().connection() as conn:
            session = PostgresSession(conn)
            try:
                yield session
            finally:
                if (
                    session.foreign_keys_relaxed
                    and conn.info.transaction_status == TransactionStatus.IDLE
                ):
                    try:
                        await session.set_foreign_key_enforcement(True)
                    except psycopg.Error as exc:
                        self._log.warning("Could not restore FK enforcement: %s", exc)

    async def run_in_transaction(
        self,
        fn: Callable[[StoreSession], Awaitable[T]],
        options: TransactionOptions,
    ) -> T:
        """Run fn(session) inside one transaction on one pooled connection.

        Waiting longer than options.max_wait_ms for a connection, or running
        longer than options.timeout_ms in total, raises
        TransactionTimeoutError after the transaction is rolled back.
        """
        pool = self._require_pool()
        try:
            async with pool.connection(timeout=options.max_wait_ms / 1000) as conn:
                await conn.set_isolation_level(_ISOLATION_LEVELS[options.isolation_level])
                try:
                    return await asyncio.wait_for(
                        self._transact(conn, fn), timeout=options.timeout_ms / 1000
                    )
                except asyncio.TimeoutError as exc:
                    raise TransactionTimeoutError(
                        f"transaction exceeded {options.timeout_ms}ms"
                    ) from exc
        except PoolTimeout as exc:
            raise TransactionTimeoutError(
                f"no connection available within {options.max_wait_ms}ms"
            ) from exc

    async def _transact(
        self,
        conn: psycopg.AsyncConnection,
        fn: Callable[[StoreSession], Awaitable[T]],
    ) -> T:
        async with conn.transaction():
            return await fn(PostgresSession(conn))
