"""attendance_etl.shared

Shared utilities used by the import pipeline, the upload handler and the
CLI.  Includes the structural error hierarchy, RejectWriter, RunCounters,
chunking, and JSON run-report writing.
"""

from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence, TypeVar

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportStructureError(Exception):
    """An upload that cannot be imported at all; no row is touched."""


class UnsupportedFileTypeError(ImportStructureError):
    """Raised for an upload whose extension is not .csv, .xlsx or .xls."""


class FileDecodeError(ImportStructureError):
    """Raised when the upload bytes cannot be read as the declared format."""


class EmptyFileError(ImportStructureError):
    """Raised when an upload has no header row or no data row."""


class MissingHeadersError(ImportStructureError):
    """Raised when mandatory canonical fields are absent from the header row."""

    def __init__(self, missing: Sequence[str], found: Sequence[str]) -> None:
        self.missing = list(missing)
        self.found = list(found)
        super().__init__(
            f"missing required headers: {', '.join(self.missing)}"
        )


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], reason: str, row_number: int) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = ["_row_number"] + list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_row_number"] = row_number
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


class NullRejectWriter:
    """Drop-in RejectWriter for callers that do not keep a rejects file."""

    def write(self, row: dict[str, str], reason: str, row_number: int) -> None:
        pass

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    rows_reconciled: int = 0
    rows_failed_reconcile: int = 0
    venues_upserted: int = 0
    trainers_inserted: int = 0
    trainers_updated: int = 0
    persons_inserted: int = 0
    persons_updated: int = 0
    persons_resurrected: int = 0
    events_upserted: int = 0
    attendance_upserted: int = 0
    chunks_committed: int = 0
    chunk_failures: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of at most `size` items."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    source_paths: dict[str, str],
    counters: RunCounters,
    result: dict[str, Any] | None = None,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        **source_paths,
        "counters": counters.to_dict(),
    }
    if result is not None:
        report["result"] = result
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
