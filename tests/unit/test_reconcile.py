"""Unit tests for attendance_etl.reconcile chunk handling.

The SQL upsert helpers are replaced by an in-memory store so that chunk
commit/rollback, dependency gating and failure attribution can be checked
without a database.  The real SQL runs in tests/integration.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest

from attendance_etl import reconcile
from attendance_etl.reconcile import ReconcileFailure, ReconcileResult, reconcile_entities
from attendance_etl.resolve import resolve_entities
from attendance_etl.shared import RunCounters
from attendance_etl.validate import AttendanceRow

TS = datetime(2024, 1, 15, tzinfo=timezone.utc)


class FakeConn:
    """Autocommit connection stand-in; writes land on commit of the block."""

    def __init__(self, autocommit: bool = True) -> None:
        self.autocommit = autocommit
        self.closed = False
        self.broken = False
        self.committed: dict[str, set[str]] = {
            "venue": set(), "trainer": set(), "person": set(),
            "event": set(), "attendance": set(),
        }
        self.pending: list[tuple[str, str]] = []
        self.executed: list[tuple[str, object]] = []
        self.fail_on: set[tuple[str, str]] = set()
        self.break_on_failure = False

    @contextmanager
    def transaction(self):
        self.pending = []
        try:
            yield
        except Exception:
            self.pending = []
            raise
        for kind, key in self.pending:
            self.committed[kind].add(key)
        self.pending = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def write(self, kind: str, key: str) -> None:
        if (kind, key) in self.fail_on:
            if self.break_on_failure:
                self.broken = True
            raise psycopg.Error(f"cannot write {kind} {key}")
        self.pending.append((kind, key))


@pytest.fixture(autouse=True)
def fake_sql(monkeypatch):
    def upsert_venue(conn, venue):
        conn.write("venue", venue.key)
        return ("venues_upserted",)

    def upsert_trainer(conn, trainer):
        conn.write("trainer", trainer.key)
        return ("trainers_inserted",)

    def upsert_person(conn, person):
        conn.write("person", person.key)
        return ("persons_inserted",)

    def upsert_event(conn, event, trainer_id, venue_id):
        assert trainer_id == f"t-{event.trainer_key}"
        assert venue_id == f"v-{event.venue_key}"
        conn.write("event", event.key)
        return ("events_upserted",)

    def upsert_attendance(conn, attendance):
        conn.write("attendance", f"{attendance.person_key}/{attendance.event_key}")
        return ("attendance_upserted",)

    def fetch_venue_ids(conn, keys):
        return {k: f"v-{k}" for k in keys if k in conn.committed["venue"]}

    def fetch_trainer_ids(conn, keys):
        return {k: f"t-{k}" for k in keys if k in conn.committed["trainer"]}

    for fn in (upsert_venue, upsert_trainer, upsert_person, upsert_event,
               upsert_attendance, fetch_venue_ids, fetch_trainer_ids):
        monkeypatch.setattr(reconcile, fn.__name__, fn)


def _rows(count: int, **overrides) -> list[AttendanceRow]:
    rows = []
    for i in range(count):
        fields = dict(
            row_number=i + 2,
            person_id=f"P{i}",
            person_name=f"Person {i}",
            event_id="E1",
            event_date=TS,
            trainer_name="Bob Smith",
        )
        fields.update(overrides)
        rows.append(AttendanceRow(**fields))
    return rows


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestReconcileHappyPath:
    def test_everything_written(self):
        conn = FakeConn()
        counters = RunCounters()
        result = reconcile_entities(conn, resolve_entities(_rows(3)), counters)
        assert result.failures == []
        assert conn.committed["venue"] == {"unspecified"}
        assert conn.committed["trainer"] == {"bob smith"}
        assert conn.committed["person"] == {"P0", "P1", "P2"}
        assert conn.committed["event"] == {"E1"}
        assert conn.committed["attendance"] == {"P0/E1", "P1/E1", "P2/E1"}
        assert counters.persons_inserted == 3
        assert counters.attendance_upserted == 3
        assert counters.chunk_failures == 0

    def test_chunks_of_batch_size(self):
        conn = FakeConn()
        counters = RunCounters()
        reconcile_entities(conn, resolve_entities(_rows(120)), counters, batch_size=50)
        # venue 1 + trainer 1 + person 3 + event 1 + attendance 3
        assert counters.chunks_committed == 9
        assert counters.persons_inserted == 120

    def test_batch_size_one(self):
        counters = RunCounters()
        reconcile_entities(FakeConn(), resolve_entities(_rows(4)), counters, batch_size=1)
        # venue 1 + trainer 1 + person 4 + event 1 + attendance 4
        assert counters.chunks_committed == 11

    def test_statement_timeout_applied_per_chunk(self):
        conn = FakeConn()
        reconcile_entities(
            conn, resolve_entities(_rows(2)), RunCounters(), statement_timeout_ms=250,
        )
        timeouts = [p for sql, p in conn.executed if "statement_timeout" in sql]
        assert timeouts == [("250",)] * 5

    def test_requires_autocommit(self):
        with pytest.raises(ValueError, match="autocommit"):
            reconcile_entities(FakeConn(autocommit=False), resolve_entities(_rows(1)), RunCounters())

    def test_empty_entities(self):
        counters = RunCounters()
        result = reconcile_entities(FakeConn(), resolve_entities([]), counters)
        assert result.failures == []
        assert counters.chunks_committed == 0


# ---------------------------------------------------------------------------
# Chunk failures
# ---------------------------------------------------------------------------

class TestChunkFailures:
    def test_failed_chunk_rolls_back_alone(self):
        conn = FakeConn()
        conn.fail_on.add(("person", "P60"))
        counters = RunCounters()
        result = reconcile_entities(conn, resolve_entities(_rows(120)), counters, batch_size=50)

        assert conn.committed["person"] == {f"P{i}" for i in range(120)} - {f"P{i}" for i in range(50, 100)}
        assert counters.chunk_failures == 1
        assert counters.persons_inserted == 70
        assert counters.attendance_upserted == 70
        assert result.failed_rows == set(range(52, 102))
        # attendance for the lost people is not reported a second time
        assert len(result.failures) == 1
        assert result.failures[0].reason == "could not save person records"
        assert result.failures[0].message.endswith("and 30 more: could not save person records")

    def test_failed_venue_gates_event(self):
        rows = [
            AttendanceRow(2, "P1", "Jane Doe", "E1", TS, "Bob Smith", venue_name="Annex"),
            AttendanceRow(3, "P2", "Ann Lee", "E1", TS, "Bob Smith", venue_name="Main Hall"),
            AttendanceRow(4, "P3", "Tom Ray", "E2", TS, "Bob Smith", venue_name="Main Hall"),
        ]
        conn = FakeConn()
        conn.fail_on.add(("venue", "annex"))
        counters = RunCounters()
        result = reconcile_entities(conn, resolve_entities(rows), counters, batch_size=1)

        assert conn.committed["event"] == {"E2"}
        assert conn.committed["attendance"] == {"P3/E2"}
        assert [f.message for f in result.failures] == [
            "Row 2: could not save venue records",
            "Row 3: event could not be saved because its trainer or venue was not saved",
        ]
        assert counters.chunk_failures == 1

    def test_stored_person_whose_chunk_failed_gates_attendance(self):
        conn = FakeConn()
        conn.committed["person"].add("P0")
        conn.fail_on.add(("person", "P0"))
        counters = RunCounters()
        result = reconcile_entities(conn, resolve_entities(_rows(2)), counters, batch_size=1)

        assert conn.committed["attendance"] == {"P1/E1"}
        assert counters.attendance_upserted == 1
        assert [f.message for f in result.failures] == ["Row 2: could not save person records"]

    def test_stored_venue_whose_chunk_failed_gates_event(self):
        conn = FakeConn()
        conn.committed["venue"].add("unspecified")
        conn.fail_on.add(("venue", "unspecified"))
        result = reconcile_entities(conn, resolve_entities(_rows(1)), RunCounters())

        assert conn.committed["event"] == set()
        assert conn.committed["attendance"] == set()
        assert result.failed_rows == {2}

    def test_broken_connection_propagates(self):
        conn = FakeConn()
        conn.fail_on.add(("trainer", "bob smith"))
        conn.break_on_failure = True
        with pytest.raises(psycopg.Error):
            reconcile_entities(conn, resolve_entities(_rows(1)), RunCounters())

    def test_warning_recorded(self):
        conn = FakeConn()
        conn.fail_on.add(("event", "E1"))
        counters = RunCounters()
        reconcile_entities(conn, resolve_entities(_rows(2)), counters)
        assert counters.warnings == ["event chunk 0 failed: cannot write event E1"]


# ---------------------------------------------------------------------------
# Failure bookkeeping
# ---------------------------------------------------------------------------

class TestReconcileResult:
    def test_rows_failed_once(self):
        result = ReconcileResult()
        result.fail([3, 2], "first")
        result.fail([2, 3, 4], "second")
        assert [f.row_numbers for f in result.failures] == [[2, 3], [4]]

    def test_nothing_new_adds_nothing(self):
        result = ReconcileResult()
        result.fail([2], "first")
        result.fail([2], "again")
        assert len(result.failures) == 1

    def test_single_row_message(self):
        assert ReconcileFailure([7], "boom").message == "Row 7: boom"

    def test_long_row_list_truncated(self):
        message = ReconcileFailure(list(range(2, 27)), "boom").message
        assert message.startswith("Rows 2, 3, 4")
        assert message.endswith("21 and 5 more: boom")
