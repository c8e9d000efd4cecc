"""attendance_etl.validate

Per-row validation.  Each decoded row becomes either a fixed-field
AttendanceRow or a RejectedRow carrying a human-readable reason.  A
rejected row never stops the rows after it.

Row numbers count the header as row 1, so the first data row is row 2.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Sequence

from attendance_etl.headers import HeaderMapping
from attendance_etl.normalize import normalize_space, parse_event_date, trim
from attendance_etl.shared import RejectWriter, RunCounters

MANDATORY_CELLS = ("person_id", "person_name", "event_id", "event_date", "trainer_name")

FIELD_LABELS = {
    "person_id": "person ID",
    "person_name": "person name",
    "event_id": "event ID",
    "event_date": "event date",
    "trainer_name": "trainer name",
}

FIRST_DATA_ROW = 2


@dataclass(frozen=True)
class AttendanceRow:
    row_number: int
    person_id: str
    person_name: str
    event_id: str
    event_date: datetime
    trainer_name: str
    initial_note: str | None = None
    event_type: str | None = None
    venue_name: str | None = None
    event_notes: str | None = None
    person_note_during: str | None = None
    completion_status: str | None = None


@dataclass(frozen=True)
class RejectedRow:
    row_number: int
    reason: str
    raw: Mapping[str, str] = field(default_factory=dict, repr=False)

    @property
    def message(self) -> str:
        return f"Row {self.row_number}: {self.reason}"


@dataclass
class ValidationResult:
    valid: list[AttendanceRow] = field(default_factory=list)
    rejected: list[RejectedRow] = field(default_factory=list)


def validate_row(
    raw: Mapping[str, str],
    row_number: int,
    mapping: HeaderMapping,
) -> AttendanceRow | RejectedRow:
    cells = {name: mapping.value(raw, name) for name in mapping.columns}

    missing = [name for name in MANDATORY_CELLS if not cells.get(name)]
    if missing:
        labels = ", ".join(FIELD_LABELS[m] for m in missing)
        return RejectedRow(row_number, f"Missing required fields ({labels})", raw)

    event_date = parse_event_date(cells["event_date"])
    if event_date is None:
        return RejectedRow(row_number, "Invalid event date format", raw)

    return AttendanceRow(
        row_number=row_number,
        person_id=cells["person_id"],
        person_name=normalize_space(cells["person_name"]) or "",
        event_id=cells["event_id"],
        event_date=event_date,
        trainer_name=normalize_space(cells["trainer_name"]) or "",
        initial_note=trim(cells.get("initial_note")),
        event_type=normalize_space(cells.get("event_type")),
        venue_name=normalize_space(cells.get("venue_name")),
        event_notes=trim(cells.get("event_notes")),
        person_note_during=trim(cells.get("person_note_during")),
        completion_status=trim(cells.get("completion_status")),
    )


def validate_rows(
    rows: Sequence[Mapping[str, str]],
    mapping: HeaderMapping,
    counters: RunCounters,
    rejects: RejectWriter,
) -> ValidationResult:
    """Partition decoded rows into valid and rejected."""
    result = ValidationResult()
    for idx, raw in enumerate(rows):
        row_number = idx + FIRST_DATA_ROW
        counters.rows_read += 1
        outcome = validate_row(raw, row_number, mapping)
        if isinstance(outcome, RejectedRow):
            rejects.write(dict(raw), outcome.reason, row_number)
            counters.rows_rejected += 1
            result.rejected.append(outcome)
        else:
            result.valid.append(outcome)
    return result
