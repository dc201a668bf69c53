"""Integration test fixtures.

Applies the migrations against an ephemeral PostgreSQL database provided
by pytest-postgresql before each integration test runs.
"""

from __future__ import annotations

import csv
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_core_entities.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (autocommit psycopg connection, dsn) with the schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# CSV builders
# ---------------------------------------------------------------------------

CAREGIVER_HEADER = [
    "franchisor_id", "franchisor_name", "agency_id", "agency_name", "subdomain",
    "profile_id", "caregiver_id", "external_id", "first_name", "last_name",
    "email", "phone_number", "gender", "applicant", "birthday_date",
    "onboarding_date", "location_name", "locations_id", "applicant_status", "status",
]

CARELOG_HEADER = [
    "franchisor_id", "agency_id", "carelog_id", "caregiver_id", "parent_id",
    "start_datetime", "end_datetime", "clock_in_actual_datetime",
    "clock_out_actual_datetime", "clock_in_method", "clock_out_method",
    "status", "split", "documentation", "general_comment_char_count",
]


def caregiver_csv_row(caregiver_id: str, franchisor_id: str = "F1", agency_id: str = "A1",
                      locations_id: str = "L1") -> list[str]:
    return [
        franchisor_id, f"Franchisor {franchisor_id}", agency_id, f"Agency {agency_id}",
        agency_id.lower(), f"P-{caregiver_id}", caregiver_id, "", "Jo", "Smith",
        "", "555-0100", "female", "false", "1990-04-01", "2023-01-15",
        f"Location {locations_id}", locations_id, "Hired", "active",
    ]


def carelog_csv_row(carelog_id: str, caregiver_id: str) -> list[str]:
    return [
        "F1", "A1", carelog_id, caregiver_id, "None",
        "2024-03-01T08:00:00Z", "2024-03-01T12:00:00Z", "", "",
        "app", "app", "completed", "false", "", "3",
    ]


@pytest.fixture
def write_csv():
    def _write(path: Path, header: list[str], rows: list[list[str]]) -> Path:
        with open(path, "w", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh)
            writer.writerow(header)
            writer.writerows(rows)
        return path
    return _write


@pytest.fixture
def caregiver_file(tmp_path, write_csv):
    rows = [caregiver_csv_row(f"C{i:03d}") for i in range(30)]
    rows += [caregiver_csv_row(f"D{i:03d}", "F2", "A2", "L2") for i in range(10)]
    return write_csv(tmp_path / "caregivers.csv", CAREGIVER_HEADER, rows)


@pytest.fixture
def carelog_file(tmp_path, write_csv):
    rows = [carelog_csv_row(f"CL{i:03d}", f"C{i % 30:03d}") for i in range(50)]
    rows.append(carelog_csv_row("CL-orphan", "NOPE"))
    return write_csv(tmp_path / "carelogs.csv", CARELOG_HEADER, rows)


@pytest.fixture
def write_caregivers(write_csv):
    """Write a caregiver CSV from (caregiver_id, franchisor_id, agency_id, locations_id) tuples."""
    def _write(path: Path, specs: list[tuple[str, str, str, str]]) -> Path:
        return write_csv(path, CAREGIVER_HEADER, [caregiver_csv_row(*spec) for spec in specs])
    return _write
