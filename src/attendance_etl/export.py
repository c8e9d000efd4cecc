"""attendance_etl.export

Read-side CSV export of attendance records, newest event first.
Soft-deleted people are left out.  The header row uses labels the import
alias table understands, so an export file can be imported again.
"""

from __future__ import annotations

import csv
import io
from datetime import timezone
from typing import TextIO

import psycopg

EXPORT_HEADERS = [
    "Customer ID",
    "Customer Name",
    "Initial Symptom",
    "Lesson ID",
    "Lesson Date",
    "Instructor Name",
    "Lesson Type",
    "Location Name",
    "Lesson Content",
    "Customer Symptoms",
    "Course Completion Status",
]

_EXPORT_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def _full_name(first: str | None, last: str | None) -> str:
    return " ".join(p for p in (first, last) if p)


def fetch_export_rows(conn: psycopg.Connection) -> list[list[str]]:
    rows = conn.execute(
        """
        SELECT p.id, p.first_name, p.last_name, p.initial_note,
               e.id, e.occurred_at,
               u.first_name, u.last_name,
               e.event_type, v.name, e.content,
               a.note_during, a.completion_note
        FROM attendance a
        JOIN person p   ON p.id = a.person_id
        JOIN event e    ON e.id = a.event_id
        JOIN app_user u ON u.id = e.trainer_id
        JOIN venue v    ON v.id = e.venue_id
        WHERE p.deleted_at IS NULL
        ORDER BY e.occurred_at DESC, e.id ASC, p.id ASC
        """
    ).fetchall()

    out: list[list[str]] = []
    for (person_id, p_first, p_last, initial_note,
         event_id, occurred_at, t_first, t_last,
         event_type, venue_name, content,
         note_during, completion_note) in rows:
        out.append([
            person_id,
            _full_name(p_first, p_last),
            initial_note or "",
            event_id,
            occurred_at.astimezone(timezone.utc).strftime(_EXPORT_TS_FORMAT),
            _full_name(t_first, t_last),
            event_type or "",
            venue_name or "",
            content or "",
            note_during or "",
            completion_note or "",
        ])
    return out


def write_attendance_csv(conn: psycopg.Connection, fh: TextIO) -> int:
    """Write the export (header always present); returns the record count."""
    rows = fetch_export_rows(conn)
    writer = csv.writer(fh, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    writer.writerows(rows)
    return len(rows)


def export_attendance_csv(conn: psycopg.Connection) -> str:
    """Return the full attendance export as CSV text."""
    buffer = io.StringIO()
    write_attendance_csv(conn, buffer)
    return buffer.getvalue()
