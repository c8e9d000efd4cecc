"""attendance_etl.reconcile

Persist resolved entities in dependency order:

    venue -> trainer -> person -> event -> attendance

Each entity collection is split into chunks of `batch_size`; every chunk is
one transaction of idempotent upserts keyed by natural key.  A chunk that
fails rolls back alone: earlier chunks stay committed and the rows it
covered are reported as failed.  Only records committed by this run
count as saved dependencies: venue and trainer ids are re-read for those
keys, and an entity whose dependency was not saved is skipped rather than
written, even when an older copy of that dependency is already stored.

The connection must be in autocommit mode so that every
`conn.transaction()` block commits on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence, TypeVar

import psycopg

from attendance_etl.resolve import (
    ResolvedAttendance,
    ResolvedEntities,
    ResolvedEvent,
    ResolvedPerson,
    ResolvedTrainer,
    ResolvedVenue,
)
from attendance_etl.shared import RunCounters, chunked

log = logging.getLogger(__name__)

T = TypeVar("T")

TRAINER_ROLE = "trainer"
IMPORTED_PASSWORD_HASH = "!imported"
MAX_ROWS_IN_MESSAGE = 20


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class ReconcileFailure:
    row_numbers: list[int]
    reason: str

    @property
    def message(self) -> str:
        rows = self.row_numbers[:MAX_ROWS_IN_MESSAGE]
        listed = ", ".join(str(n) for n in rows)
        if len(self.row_numbers) > MAX_ROWS_IN_MESSAGE:
            listed += f" and {len(self.row_numbers) - MAX_ROWS_IN_MESSAGE} more"
        label = "Row" if len(self.row_numbers) == 1 else "Rows"
        return f"{label} {listed}: {self.reason}"


@dataclass
class ReconcileResult:
    failures: list[ReconcileFailure] = field(default_factory=list)
    failed_rows: set[int] = field(default_factory=set)

    def fail(self, row_numbers: Iterable[int], reason: str) -> None:
        """Record rows as failed; rows already failed are not repeated."""
        fresh = sorted(set(row_numbers) - self.failed_rows)
        if not fresh:
            return
        self.failed_rows.update(fresh)
        self.failures.append(ReconcileFailure(fresh, reason))


# ---------------------------------------------------------------------------
# Upsert helpers: one entity per call, caller manages the transaction
# ---------------------------------------------------------------------------

def upsert_venue(conn: psycopg.Connection, venue: ResolvedVenue) -> tuple[str, ...]:
    conn.execute(
        """
        INSERT INTO venue (name, normalized_name)
        VALUES (%s, %s)
        ON CONFLICT (normalized_name) DO NOTHING
        """,
        (venue.name, venue.key),
    )
    return ("venues_upserted",)


def upsert_trainer(conn: psycopg.Connection, trainer: ResolvedTrainer) -> tuple[str, ...]:
    """Upsert by (role, normalized_name).

    username/email/password are only written on creation; an existing
    trainer keeps its handle.  A soft-deleted trainer is restored.
    """
    row = conn.execute(
        """
        INSERT INTO app_user
          (username, password_hash, role, first_name, last_name,
           email, normalized_name)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (role, normalized_name) DO UPDATE SET
          first_name = EXCLUDED.first_name,
          last_name = EXCLUDED.last_name,
          deleted_at = NULL,
          updated_at = now()
        RETURNING (xmax = 0) AS inserted
        """,
        (trainer.handle, IMPORTED_PASSWORD_HASH, TRAINER_ROLE,
         trainer.given_name, trainer.family_name, trainer.email, trainer.key),
    ).fetchone()
    return ("trainers_inserted",) if row[0] else ("trainers_updated",)


def upsert_person(conn: psycopg.Connection, person: ResolvedPerson) -> tuple[str, ...]:
    """Upsert by external id.  Name fields always follow the import;
    email is synthesized on creation only; initial_note fills a blank."""
    prior = conn.execute(
        "SELECT deleted_at IS NOT NULL FROM person WHERE id = %s",
        (person.key,),
    ).fetchone()
    row = conn.execute(
        """
        INSERT INTO person (id, first_name, last_name, email, initial_note)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET
          first_name = EXCLUDED.first_name,
          last_name = EXCLUDED.last_name,
          initial_note = COALESCE(NULLIF(person.initial_note, ''),
                                  EXCLUDED.initial_note),
          deleted_at = NULL,
          updated_at = now()
        RETURNING (xmax = 0) AS inserted
        """,
        (person.key, person.given_name, person.family_name,
         person.email, person.initial_note),
    ).fetchone()
    if row[0]:
        return ("persons_inserted",)
    if prior and prior[0]:
        return ("persons_updated", "persons_resurrected")
    return ("persons_updated",)


def upsert_event(
    conn: psycopg.Connection,
    event: ResolvedEvent,
    trainer_id: str,
    venue_id: str,
) -> tuple[str, ...]:
    conn.execute(
        """
        INSERT INTO event
          (id, event_type, content, occurred_at, trainer_id, venue_id)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET
          event_type = EXCLUDED.event_type,
          content = COALESCE(EXCLUDED.content, event.content),
          occurred_at = EXCLUDED.occurred_at,
          trainer_id = EXCLUDED.trainer_id,
          venue_id = EXCLUDED.venue_id,
          updated_at = now()
        """,
        (event.key, event.event_type, event.content, event.occurred_at,
         trainer_id, venue_id),
    )
    return ("events_upserted",)


def upsert_attendance(
    conn: psycopg.Connection,
    attendance: ResolvedAttendance,
) -> tuple[str, ...]:
    conn.execute(
        """
        INSERT INTO attendance
          (person_id, event_id, note_during, completion_note, status)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (person_id, event_id) DO UPDATE SET
          note_during = EXCLUDED.note_during,
          completion_note = EXCLUDED.completion_note,
          status = EXCLUDED.status,
          updated_at = now()
        """,
        (attendance.person_key, attendance.event_key,
         attendance.note_during, attendance.completion_note,
         attendance.status),
    )
    return ("attendance_upserted",)


# ---------------------------------------------------------------------------
# Id re-reads
# ---------------------------------------------------------------------------

def fetch_venue_ids(conn: psycopg.Connection, keys: Sequence[str]) -> dict[str, str]:
    if not keys:
        return {}
    rows = conn.execute(
        "SELECT normalized_name, id FROM venue WHERE normalized_name = ANY(%s)",
        (list(keys),),
    ).fetchall()
    return {r[0]: str(r[1]) for r in rows}


def fetch_trainer_ids(conn: psycopg.Connection, keys: Sequence[str]) -> dict[str, str]:
    if not keys:
        return {}
    rows = conn.execute(
        """
        SELECT normalized_name, id FROM app_user
        WHERE role = %s AND normalized_name = ANY(%s)
        """,
        (TRAINER_ROLE, list(keys)),
    ).fetchall()
    return {r[0]: str(r[1]) for r in rows}


# ---------------------------------------------------------------------------
# Chunk runner
# ---------------------------------------------------------------------------

def _run_chunks(
    conn: psycopg.Connection,
    label: str,
    items: Sequence[T],
    write_one: Callable[[psycopg.Connection, T], tuple[str, ...]],
    row_numbers_of: Callable[[T], list[int]],
    batch_size: int,
    statement_timeout_ms: int | None,
    counters: RunCounters,
    result: ReconcileResult,
) -> list[T]:
    """Write items chunk by chunk; returns the items whose chunk committed."""
    committed: list[T] = []
    for idx, chunk in enumerate(chunked(items, batch_size)):
        tallies: list[str] = []
        try:
            with conn.transaction():
                if statement_timeout_ms:
                    conn.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(statement_timeout_ms),),
                    )
                for item in chunk:
                    tallies.extend(write_one(conn, item))
        except psycopg.Error as exc:
            if conn.closed or conn.broken:
                raise
            rows = [n for item in chunk for n in row_numbers_of(item)]
            log.warning(
                "%s chunk %d failed (%d records, rows %s): %s",
                label, idx, len(chunk), sorted(set(rows)), exc,
            )
            counters.chunk_failures += 1
            counters.warnings.append(f"{label} chunk {idx} failed: {exc}")
            result.fail(rows, f"could not save {label} records")
            continue
        counters.chunks_committed += 1
        committed.extend(chunk)
        for name in tallies:
            setattr(counters, name, getattr(counters, name) + 1)
    return committed


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def reconcile_entities(
    conn: psycopg.Connection,
    entities: ResolvedEntities,
    counters: RunCounters,
    batch_size: int = 50,
    statement_timeout_ms: int | None = None,
) -> ReconcileResult:
    """Write all resolved entities; returns per-row failures."""
    if not conn.autocommit:
        raise ValueError("reconcile_entities requires an autocommit connection")

    result = ReconcileResult()

    def run(label, items, write_one):
        return _run_chunks(
            conn, label, items, write_one, lambda item: item.row_numbers,
            batch_size, statement_timeout_ms, counters, result,
        )

    # Step 1: venues, trainers, people
    venues = list(entities.venues.values())
    saved_venues = run("venue", venues, upsert_venue)
    venue_ids = fetch_venue_ids(conn, [v.key for v in saved_venues])

    trainers = list(entities.trainers.values())
    saved_trainers = run("trainer", trainers, upsert_trainer)
    trainer_ids = fetch_trainer_ids(conn, [t.key for t in saved_trainers])

    persons = list(entities.persons.values())
    person_keys = {p.key for p in run("person", persons, upsert_person)}

    # Step 2: events whose trainer and venue were saved
    ready_events: list[ResolvedEvent] = []
    for event in entities.events.values():
        if event.trainer_key in trainer_ids and event.venue_key in venue_ids:
            ready_events.append(event)
        else:
            result.fail(
                event.row_numbers,
                "event could not be saved because its trainer or venue was not saved",
            )

    saved_events = run(
        "event",
        ready_events,
        lambda c, e: upsert_event(c, e, trainer_ids[e.trainer_key], venue_ids[e.venue_key]),
    )
    event_keys = {e.key for e in saved_events}

    # Step 3: attendance whose person and event were saved by this run
    ready_attendance: list[ResolvedAttendance] = []
    for attendance in entities.attendance.values():
        if attendance.person_key in person_keys and attendance.event_key in event_keys:
            ready_attendance.append(attendance)
        else:
            result.fail(
                attendance.row_numbers,
                "attendance could not be saved because its person or event was not saved",
            )

    run("attendance", ready_attendance, upsert_attendance)

    return result
