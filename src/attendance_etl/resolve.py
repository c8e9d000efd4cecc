"""attendance_etl.resolve

In-memory identity resolution over all valid rows of one upload.

Builds one deduplicated map per entity type, keyed by natural key:

  venue       normalized venue name ("Unspecified" when blank)
  trainer     normalized trainer name
  person      external person_id (normalized full name when absent)
  event       external event_id
  attendance  (person key, event key)

Reconciliation rules across rows of the same upload:
  - person name fields: the last row wins
  - person initial note: the first non-empty value wins
  - event timestamp: the earliest wins
  - event content and type: the first non-empty value wins
  - attendance notes: the last row wins

Runs to completion before any write.  Every resolved entity remembers the
row numbers that referenced it so persistence failures can be reported
per row.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from attendance_etl.normalize import (
    build_trainer_handle,
    normalize_name,
    parse_name_parts,
)
from attendance_etl.validate import AttendanceRow

ATTENDED = "attended"


@dataclass
class ResolvedVenue:
    key: str
    name: str
    row_numbers: list[int] = field(default_factory=list)


@dataclass
class ResolvedTrainer:
    key: str
    full_name: str
    given_name: str
    family_name: str
    handle: str
    email: str
    row_numbers: list[int] = field(default_factory=list)


@dataclass
class ResolvedPerson:
    key: str
    full_name: str
    given_name: str
    family_name: str
    email: str
    initial_note: str | None = None
    row_numbers: list[int] = field(default_factory=list)


@dataclass
class ResolvedEvent:
    key: str
    occurred_at: datetime
    trainer_key: str
    venue_key: str
    event_type: str | None = None
    content: str | None = None
    row_numbers: list[int] = field(default_factory=list)


@dataclass
class ResolvedAttendance:
    person_key: str
    event_key: str
    note_during: str | None = None
    completion_note: str | None = None
    status: str = ATTENDED
    row_numbers: list[int] = field(default_factory=list)


@dataclass
class ResolvedEntities:
    venues: dict[str, ResolvedVenue] = field(default_factory=dict)
    trainers: dict[str, ResolvedTrainer] = field(default_factory=dict)
    persons: dict[str, ResolvedPerson] = field(default_factory=dict)
    events: dict[str, ResolvedEvent] = field(default_factory=dict)
    attendance: dict[tuple[str, str], ResolvedAttendance] = field(default_factory=dict)


def person_key(row: AttendanceRow) -> str:
    if row.person_id:
        return row.person_id
    return f"name:{normalize_name(row.person_name)}"


def trainer_key(row: AttendanceRow) -> str:
    return normalize_name(row.trainer_name) or ""


def venue_key(row: AttendanceRow, default_venue_name: str) -> tuple[str, str]:
    """Return (natural key, display name) for a row's venue."""
    name = row.venue_name or default_venue_name
    key = normalize_name(name) or normalize_name(default_venue_name) or ""
    return key, name


def resolve_entities(
    rows: Sequence[AttendanceRow],
    default_venue_name: str = "Unspecified",
    default_event_type: str = "Group",
    email_domain: str = "imported.local",
) -> ResolvedEntities:
    out = ResolvedEntities()

    for row in rows:
        n = row.row_number

        # Venue
        v_key, v_name = venue_key(row, default_venue_name)
        venue = out.venues.get(v_key)
        if venue is None:
            venue = out.venues[v_key] = ResolvedVenue(key=v_key, name=v_name)
        venue.row_numbers.append(n)

        # Trainer
        t_key = trainer_key(row)
        trainer = out.trainers.get(t_key)
        if trainer is None:
            given, family = parse_name_parts(row.trainer_name)
            handle = build_trainer_handle(t_key)
            trainer = out.trainers[t_key] = ResolvedTrainer(
                key=t_key,
                full_name=row.trainer_name,
                given_name=given,
                family_name=family,
                handle=handle,
                email=f"{handle}@{email_domain}",
            )
        trainer.row_numbers.append(n)

        # Person
        p_key = person_key(row)
        given, family = parse_name_parts(row.person_name)
        person = out.persons.get(p_key)
        if person is None:
            person = out.persons[p_key] = ResolvedPerson(
                key=p_key,
                full_name=row.person_name,
                given_name=given,
                family_name=family,
                email=f"{p_key}@{email_domain}",
                initial_note=row.initial_note,
            )
        else:
            person.full_name = row.person_name
            person.given_name = given
            person.family_name = family
            if not person.initial_note and row.initial_note:
                person.initial_note = row.initial_note
        person.row_numbers.append(n)

        # Event
        event = out.events.get(row.event_id)
        if event is None:
            event = out.events[row.event_id] = ResolvedEvent(
                key=row.event_id,
                occurred_at=row.event_date,
                trainer_key=t_key,
                venue_key=v_key,
                event_type=row.event_type,
                content=row.event_notes,
            )
        else:
            if row.event_date < event.occurred_at:
                event.occurred_at = row.event_date
            if not event.content and row.event_notes:
                event.content = row.event_notes
            if not event.event_type and row.event_type:
                event.event_type = row.event_type
        event.row_numbers.append(n)

        # Attendance
        a_key = (p_key, row.event_id)
        attendance = out.attendance.get(a_key)
        if attendance is None:
            attendance = out.attendance[a_key] = ResolvedAttendance(
                person_key=p_key, event_key=row.event_id,
            )
        attendance.note_during = row.person_note_during
        attendance.completion_note = row.completion_status
        attendance.row_numbers.append(n)

    for event in out.events.values():
        if not event.event_type:
            event.event_type = default_event_type

    return out
