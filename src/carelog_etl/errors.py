"""carelog_etl.errors

Exception taxonomy for the ingestion pipeline.

Row-level conditions (rejections, missing parents, duplicates) are not
exceptions; they are absorbed into batch counters. The classes here cover
what crosses a batch or file boundary.
"""

from __future__ import annotations

import psycopg

# SQLSTATE codes PostgreSQL uses for lock/serialization conflicts.
DEADLOCK_SQLSTATES = frozenset({"40P01", "40001"})

_DEADLOCK_MARKERS = ("deadlock", "40p01", "sharelock")


class EtlError(Exception):
    """Base class for carelog_etl errors."""


class FatalConfigurationError(EtlError):
    """Raised when the run cannot start (bad config, store unreachable)."""


class ConfigValidationError(FatalConfigurationError, ValueError):
    """Raised when a config file or option fails validation."""


class RowSourceError(EtlError):
    """Raised when a CSV file cannot be read or fails header validation."""


class TransientStoreError(EtlError):
    """A store failure that may succeed if the write is attempted again."""


class DeadlockError(TransientStoreError):
    """The store aborted the transaction due to a deadlock or serialization conflict."""


class TransactionTimeoutError(TransientStoreError):
    """Connection wait or transaction duration exceeded its configured limit."""


def is_deadlock(exc: BaseException) -> bool:
    """Return True if exc is a deadlock-class store failure.

    Checks, in order: our own DeadlockError, psycopg's SQLSTATE, then the
    message text for drivers that only surface a string.
    """
    if isinstance(exc, DeadlockError):
        return True
    if isinstance(exc, (psycopg.errors.DeadlockDetected, psycopg.errors.SerializationFailure)):
        return True
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate in DEADLOCK_SQLSTATES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _DEADLOCK_MARKERS)


def describe(exc: BaseException) -> str:
    """Short one-line rendering used in error strings and log lines."""
    text = str(exc).strip().splitlines()[0] if str(exc).strip() else ""
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__
