"""carelog_etl.records

Typed records and the declarative field-rule tables that map raw CSV rows
onto them.

Each record kind has a fixed dataclass whose field names match the
PostgreSQL column names, and a FieldRule table describing, per column, the
source CSV header, a pure conversion function and whether the value is
required. Applying a table returns either a record or a RowRejection; a bad
row never raises.

Caregiver rows also carry their parent entities (franchisor, agency,
location), which are pulled out per batch by the extract_* helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import Any, Callable, Iterable, Mapping, Union

from carelog_etl.normalize import (
    parse_bool,
    parse_date,
    parse_datetime,
    parse_int,
    placeholder_email,
    trim,
    trim_or_null,
)

Row = Mapping[str, Any]

# ---------------------------------------------------------------------------
# Record types and entity kinds
# ---------------------------------------------------------------------------

CAREGIVER = "caregiver"
CARELOG = "carelog"
RECORD_TYPES = (CAREGIVER, CARELOG)

FRANCHISOR = "franchisor"
AGENCY = "agency"
LOCATION = "location"
DEPENDENCY_KINDS = (FRANCHISOR, AGENCY, LOCATION)

# Natural key columns per entity kind; composite keys are returned as tuples.
KEY_COLUMNS: dict[str, tuple[str, ...]] = {
    FRANCHISOR: ("franchisor_id",),
    AGENCY: ("agency_id", "franchisor_id"),
    LOCATION: ("location_id",),
    CAREGIVER: ("caregiver_id",),
    CARELOG: ("carelog_id",),
}


@dataclass(frozen=True)
class Franchisor:
    franchisor_id: str
    name: str | None = None


@dataclass(frozen=True)
class Agency:
    agency_id: str
    franchisor_id: str
    name: str | None = None
    subdomain: str | None = None


@dataclass(frozen=True)
class Location:
    location_id: str
    location_name: str | None = None


@dataclass(frozen=True)
class Caregiver:
    caregiver_id: str
    profile_id: str
    franchisor_id: str
    agency_id: str
    first_name: str
    last_name: str
    external_id: str | None = None
    location_id: str | None = None
    email: str | None = None
    phone_number: str | None = None
    gender: str | None = None
    applicant: bool = False
    birthday_date: date | None = None
    onboarding_date: date | None = None
    applicant_status: str | None = None
    status: str | None = None


@dataclass(frozen=True)
class Carelog:
    carelog_id: str
    caregiver_id: str
    franchisor_id: str
    agency_id: str
    start_datetime: datetime
    end_datetime: datetime
    parent_id: str | None = None
    clock_in_actual_datetime: datetime | None = None
    clock_out_actual_datetime: datetime | None = None
    clock_in_method: str | None = None
    clock_out_method: str | None = None
    status: str | None = None
    split: bool = False
    documentation: str | None = None
    general_comment_char_count: int = 0


Record = Union[Franchisor, Agency, Location, Caregiver, Carelog]


@dataclass(frozen=True)
class RowRejection:
    """A raw row that could not be mapped onto a typed record."""

    reason: str
    row: Row = field(repr=False)


def natural_key(kind: str, record: Record) -> Any:
    """Return the natural key of record: a scalar, or a tuple for composite keys."""
    cols = KEY_COLUMNS[kind]
    if len(cols) == 1:
        return getattr(record, cols[0])
    return tuple(getattr(record, c) for c in cols)


def record_columns(record_cls: type) -> list[str]:
    return [f.name for f in fields(record_cls)]


def record_values(record: Record) -> tuple[Any, ...]:
    return tuple(getattr(record, f.name) for f in fields(record))


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldRule:
    column: str
    convert: Callable[[Any], Any]
    required: bool = False
    source: str | None = None

    @property
    def source_column(self) -> str:
        return self.source or self.column


CAREGIVER_RULES: tuple[FieldRule, ...] = (
    FieldRule("franchisor_id", trim, required=True),
    FieldRule("agency_id", trim, required=True),
    FieldRule("profile_id", trim, required=True),
    FieldRule("caregiver_id", trim, required=True),
    FieldRule("external_id", trim),
    FieldRule("first_name", trim, required=True),
    FieldRule("last_name", trim, required=True),
    FieldRule("email", trim),
    FieldRule("phone_number", trim),
    FieldRule("gender", trim),
    FieldRule("applicant", parse_bool),
    FieldRule("birthday_date", parse_date),
    FieldRule("onboarding_date", parse_date),
    FieldRule("location_id", trim_or_null, source="locations_id"),
    FieldRule("applicant_status", trim),
    FieldRule("status", trim),
)

CARELOG_RULES: tuple[FieldRule, ...] = (
    FieldRule("franchisor_id", trim, required=True),
    FieldRule("agency_id", trim, required=True),
    FieldRule("carelog_id", trim, required=True),
    FieldRule("caregiver_id", trim, required=True),
    FieldRule("parent_id", trim_or_null),
    FieldRule("start_datetime", parse_datetime, required=True),
    FieldRule("end_datetime", parse_datetime, required=True),
    FieldRule("clock_in_actual_datetime", parse_datetime),
    FieldRule("clock_out_actual_datetime", parse_datetime),
    FieldRule("clock_in_method", trim),
    FieldRule("clock_out_method", trim),
    FieldRule("status", trim),
    FieldRule("split", parse_bool),
    FieldRule("documentation", trim),
    FieldRule("general_comment_char_count", parse_int),
)


def apply_rules(row: Row, rules: Iterable[FieldRule]) -> dict[str, Any] | RowRejection:
    """Convert row column by column; the first missing required value rejects it."""
    values: dict[str, Any] = {}
    for rule in rules:
        value = rule.convert(row.get(rule.source_column))
        if rule.required and value is None:
            return RowRejection(f"missing_{rule.column}", row)
        values[rule.column] = value
    return values


def to_caregiver(row: Row) -> Caregiver | RowRejection:
    values = apply_rules(row, CAREGIVER_RULES)
    if isinstance(values, RowRejection):
        return values
    if values["email"] is None:
        values["email"] = placeholder_email(values["caregiver_id"])
    return Caregiver(**values)


def to_carelog(row: Row) -> Carelog | RowRejection:
    values = apply_rules(row, CARELOG_RULES)
    if isinstance(values, RowRejection):
        return values
    return Carelog(**values)


_CONVERTERS: dict[str, Callable[[Row], Any]] = {
    CAREGIVER: to_caregiver,
    CARELOG: to_carelog,
}


def transform_rows(
    rows: Iterable[Row],
    record_type: str,
) -> tuple[list[Any], list[RowRejection]]:
    """Map rows to typed records of record_type, splitting off rejections."""
    convert = _CONVERTERS[record_type]
    records: list[Any] = []
    rejections: list[RowRejection] = []
    for row in rows:
        result = convert(row)
        if isinstance(result, RowRejection):
            rejections.append(result)
        else:
            records.append(result)
    return records, rejections


# ---------------------------------------------------------------------------
# Dependency extraction (caregiver rows)
# ---------------------------------------------------------------------------

def extract_franchisors(rows: Iterable[Row]) -> list[Franchisor]:
    """Distinct franchisors by franchisor_id; the first name seen wins."""
    found: dict[str, Franchisor] = {}
    for row in rows:
        franchisor_id = trim(row.get("franchisor_id"))
        if franchisor_id and franchisor_id not in found:
            found[franchisor_id] = Franchisor(
                franchisor_id=franchisor_id,
                name=trim(row.get("franchisor_name")),
            )
    return list(found.values())


def extract_agencies(rows: Iterable[Row]) -> list[Agency]:
    """Distinct agencies by (agency_id, franchisor_id); both ids required."""
    found: dict[tuple[str, str], Agency] = {}
    for row in rows:
        agency_id = trim(row.get("agency_id"))
        franchisor_id = trim(row.get("franchisor_id"))
        if not agency_id or not franchisor_id:
            continue
        key = (agency_id, franchisor_id)
        if key not in found:
            found[key] = Agency(
                agency_id=agency_id,
                franchisor_id=franchisor_id,
                name=trim(row.get("agency_name")),
                subdomain=trim(row.get("subdomain")),
            )
    return list(found.values())


def extract_locations(rows: Iterable[Row]) -> list[Location]:
    """Distinct locations by location_id; rows without both id and name are ignored."""
    found: dict[str, Location] = {}
    for row in rows:
        location_id = trim_or_null(row.get("locations_id"))
        location_name = trim(row.get("location_name"))
        if location_id and location_name and location_id not in found:
            found[location_id] = Location(location_id=location_id, location_name=location_name)
    return list(found.values())
