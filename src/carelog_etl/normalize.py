"""Normalization functions for caregiver / carelog CSV ingestion.

All functions accept raw CSV cell values (str, bool, number or None) and
return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

# Values the upstream exporter writes for "no value".
_NULL_SENTINELS = frozenset({"none", "null", "0000-00-00 00:00:00"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Stringify, strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


def trim_or_null(value: Any) -> str | None:
    """Like trim, but exporter null sentinels ('None', 'null') also become None."""
    v = trim(value)
    if v is None or v.lower() in _NULL_SENTINELS:
        return None
    return v


# ---------------------------------------------------------------------------
# Rule 2: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: Any) -> bool:
    """True for a boolean True or the text 'true' (any case); otherwise False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


# ---------------------------------------------------------------------------
# Rule 3: parse_datetime
# ---------------------------------------------------------------------------

def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp.

    Blank values and null sentinels return None, as does anything that does
    not parse. Naive timestamps are taken to be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        v = trim_or_null(value)
        if v is None:
            return None
        try:
            parsed = datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Rule 4: parse_date
# ---------------------------------------------------------------------------

def parse_date(value: Any) -> date | None:
    """Parse an ISO date, or the date portion of an ISO timestamp."""
    v = trim_or_null(value)
    if v is None:
        return None
    try:
        return date.fromisoformat(v)
    except ValueError:
        pass
    ts = parse_datetime(v)
    return ts.date() if ts is not None else None


# ---------------------------------------------------------------------------
# Rule 5: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: Any, default: int = 0) -> int:
    """Parse an integer count; non-numeric input returns default.

    Accepts float-formatted text ('12.0') since spreadsheet exports emit it.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    v = trim_or_null(value)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        pass
    try:
        number = float(v)
    except ValueError:
        return default
    if number != number or number in (float("inf"), float("-inf")):
        return default
    return int(number)


# ---------------------------------------------------------------------------
# Helper: placeholder_email
# ---------------------------------------------------------------------------

def placeholder_email(caregiver_id: str) -> str:
    """Deterministic stand-in address for caregivers exported without an email."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", caregiver_id).strip("-") or "unknown"
    return f"no-email-{slug}@placeholder.invalid"
