"""Unit tests for attendance_etl.shared."""

from __future__ import annotations

import json

import pytest

from attendance_etl.shared import (
    MissingHeadersError,
    RejectWriter,
    RunCounters,
    chunked,
    write_run_report,
)


class TestChunked:
    def test_even_split(self):
        assert list(chunked([1, 2, 3, 4], 2)) == [[1, 2], [3, 4]]

    def test_remainder(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]

    def test_empty(self):
        assert list(chunked([], 50)) == []

    def test_zero_size_rejected(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestRunCounters:
    def test_warnings_capped_in_dict(self):
        counters = RunCounters(warnings=[f"w{i}" for i in range(80)])
        d = counters.to_dict()
        assert len(d["warnings"]) == 50
        assert d["rows_read"] == 0


class TestRejectWriter:
    def test_lazy_open_and_columns(self, tmp_path):
        path = tmp_path / "nested" / "rejects.csv"
        writer = RejectWriter(path)
        assert not path.exists()
        writer.write({"Customer ID": "P1", "Customer Name": ""}, "Missing required fields (person name)", 8)
        writer.close()
        lines = path.read_text(encoding="utf-8").splitlines()
        assert lines == [
            "_row_number,Customer ID,Customer Name,_reject_reason",
            "8,P1,,Missing required fields (person name)",
        ]


class TestWriteRunReport:
    def test_writes_json(self, tmp_path):
        counters = RunCounters(rows_read=3)
        path = write_run_report(
            "run-1", "2024-01-01T00:00:00+00:00", "import",
            {"file_path": "lessons.csv"}, counters,
            result={"status": "success"}, reports_dir=tmp_path,
        )
        assert path == tmp_path / "run-1.json"
        report = json.loads(path.read_text())
        assert report["file_path"] == "lessons.csv"
        assert report["counters"]["rows_read"] == 3
        assert report["result"] == {"status": "success"}
        assert "finished_at" in report


class TestMissingHeadersError:
    def test_carries_lists(self):
        exc = MissingHeadersError(("event_date",), ("person_id",))
        assert exc.missing == ["event_date"]
        assert exc.found == ["person_id"]
        assert "event_date" in str(exc)
