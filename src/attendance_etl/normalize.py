"""Normalization functions for attendance spreadsheet ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import hashlib
import math
import re
import unicodedata
from datetime import datetime, timedelta, timezone

from dateutil import parser as date_parser

# Spreadsheet serial day 0, including the 1900 leap-year quirk.
SPREADSHEET_EPOCH = datetime(1899, 12, 30, tzinfo=timezone.utc)

_NBSP = "\u00a0"


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_name  (natural key for people, trainers, venues)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Lowercase, remove punctuation except spaces, collapse spaces."""
    v = trim(value)
    if v is None:
        return None
    # Decompose unicode (e.g. accented chars) then drop combining marks
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^\w\s]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 4: normalize_header_label
# ---------------------------------------------------------------------------

def normalize_header_label(value: str | None) -> str:
    """Fold a raw column label for alias lookup.

    Non-breaking spaces become spaces, the label is trimmed and lowercased,
    and internal whitespace runs collapse to one space.  Underscores are
    kept, so 'customer_id' and 'customer id' are distinct alias keys.
    """
    if value is None:
        return ""
    v = value.replace(_NBSP, " ").strip().lower()
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 5: parse_event_date
# ---------------------------------------------------------------------------

def parse_event_date(value: str | None) -> datetime | None:
    """Parse an attendance date into an aware UTC datetime.

    A positive number is a spreadsheet serial day count from
    SPREADSHEET_EPOCH (fractions are time of day).  Any other number is
    rejected.  Everything else goes through dateutil; naive results are
    taken as UTC.
    """
    v = trim(value)
    if v is None:
        return None

    try:
        serial = float(v)
    except ValueError:
        serial = None

    if serial is not None:
        if not math.isfinite(serial) or serial <= 0:
            return None
        try:
            return SPREADSHEET_EPOCH + timedelta(seconds=serial * 86400)
        except OverflowError:
            return None

    try:
        parsed = date_parser.parse(v)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Helper: parse_name_parts
# ---------------------------------------------------------------------------

def parse_name_parts(full_name: str | None) -> tuple[str, str]:
    """Split a full name into (given_name, family_name).

    Supports:
    - "Last, First Middle" → ("First Middle", "Last")
    - "First Middle Last"  → ("First", "Middle Last")
    - Single token         → (token, "")

    Missing parts come back as empty strings; the person and app_user
    tables store NOT NULL name columns.
    """
    v = normalize_space(full_name)
    if not v:
        return ("", "")
    if "," in v:
        last, first = v.split(",", 1)
        return (trim(first) or "", trim(last) or "")
    first, _, rest = v.partition(" ")
    return (first, rest)


# ---------------------------------------------------------------------------
# Helper: trainer handle
# ---------------------------------------------------------------------------

def stable_name_hash(value: str) -> str:
    """Return a short deterministic hash of a name (8 hex chars)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


def build_trainer_handle(name_key: str) -> str:
    """Return the login handle synthesized for an imported trainer.

    Format is '{compactedName}_{hash}' where both parts derive from the
    normalized trainer name, so re-importing the same trainer yields the
    same handle.
    """
    compact = re.sub(r"\s+", "", name_key) or "trainer"
    return f"{compact}_{stable_name_hash(name_key)}"
