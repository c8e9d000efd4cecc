"""attendance_etl.report

Import outcome: the state machine of one import run, the ImportResult
returned to callers, and the text report printed by the CLI.

    RECEIVED -> DECODED -> HEADERS_VALIDATED -> ROWS_VALIDATED
             -> ENTITIES_RESOLVED -> RECONCILED -> REPORTED

FAILED is reachable only from RECEIVED, DECODED and HEADERS_VALIDATED.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Sequence

from attendance_etl.shared import (
    ImportStructureError,
    MissingHeadersError,
    RunCounters,
)

MAX_REPORTED_ERRORS = 10


class ImportState(str, enum.Enum):
    RECEIVED = "received"
    DECODED = "decoded"
    HEADERS_VALIDATED = "headers_validated"
    ROWS_VALIDATED = "rows_validated"
    ENTITIES_RESOLVED = "entities_resolved"
    RECONCILED = "reconciled"
    REPORTED = "reported"
    FAILED = "failed"


_TRANSITIONS: dict[ImportState, frozenset[ImportState]] = {
    ImportState.RECEIVED: frozenset({ImportState.DECODED, ImportState.FAILED}),
    ImportState.DECODED: frozenset({ImportState.HEADERS_VALIDATED, ImportState.FAILED}),
    ImportState.HEADERS_VALIDATED: frozenset({ImportState.ROWS_VALIDATED, ImportState.FAILED}),
    ImportState.ROWS_VALIDATED: frozenset({ImportState.ENTITIES_RESOLVED}),
    ImportState.ENTITIES_RESOLVED: frozenset({ImportState.RECONCILED}),
    ImportState.RECONCILED: frozenset({ImportState.REPORTED}),
    ImportState.REPORTED: frozenset(),
    ImportState.FAILED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised on a state change the import state machine does not allow."""


def check_transition(current: ImportState, target: ImportState) -> None:
    if target not in _TRANSITIONS[current]:
        raise InvalidTransitionError(f"{current.value} -> {target.value}")


class ImportStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


HTTP_STATUS = {
    ImportStatus.SUCCESS: 200,
    ImportStatus.PARTIAL: 207,
    ImportStatus.FAILED: 400,
}


@dataclass
class ImportResult:
    status: ImportStatus
    state: ImportState
    message: str
    total_rows: int = 0
    processed_count: int = 0
    error_count: int | None = None
    errors: list[str] = field(default_factory=list)
    missing_headers: list[str] | None = None
    found_headers: list[str] | None = None
    expected_headers: list[str] | None = None

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.status]

    def to_response(self) -> dict[str, Any]:
        """JSON body for the upload endpoint."""
        if self.error_count is None:
            body: dict[str, Any] = {"error": self.message}
            if self.missing_headers is not None:
                body["missingHeaders"] = self.missing_headers
                body["foundHeaders"] = self.found_headers or []
                body["expectedHeaders"] = self.expected_headers or []
            return body
        body = {
            "message": self.message,
            "processedCount": self.processed_count,
            "errorCount": self.error_count,
        }
        if self.errors:
            body["errors"] = self.errors
        return body

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "state": self.state.value,
            "http_status": self.http_status,
            "message": self.message,
            "total_rows": self.total_rows,
            "processed_count": self.processed_count,
            "error_count": self.error_count,
            "errors": self.errors,
            "missing_headers": self.missing_headers,
            "found_headers": self.found_headers,
        }


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def build_structural_failure(
    exc: ImportStructureError,
    expected_headers: Sequence[str] = (),
) -> ImportResult:
    """Result for an upload rejected before any row was processed."""
    if isinstance(exc, MissingHeadersError):
        return ImportResult(
            status=ImportStatus.FAILED,
            state=ImportState.FAILED,
            message="Import file is missing required headers",
            missing_headers=exc.missing,
            found_headers=exc.found,
            expected_headers=list(expected_headers),
        )
    return ImportResult(
        status=ImportStatus.FAILED,
        state=ImportState.FAILED,
        message=str(exc),
    )


def build_import_result(
    total_rows: int,
    processed_count: int,
    error_messages: Sequence[str],
    max_errors: int = MAX_REPORTED_ERRORS,
) -> ImportResult:
    """Fold row-level outcomes into one result.

    error_messages holds one entry per row rejection or per failed
    persistence chunk, in that order.
    """
    error_count = total_rows - processed_count
    if error_count == 0:
        status = ImportStatus.SUCCESS
        message = "Import completed successfully"
    elif processed_count > 0:
        status = ImportStatus.PARTIAL
        message = f"Import completed with {error_count} errors"
    else:
        status = ImportStatus.FAILED
        message = "Import failed: no rows could be imported"
    return ImportResult(
        status=status,
        state=ImportState.REPORTED,
        message=message,
        total_rows=total_rows,
        processed_count=processed_count,
        error_count=error_count,
        errors=list(error_messages[:max_errors]),
    )


def build_import_report(result: ImportResult, counters: RunCounters) -> str:
    lines = [
        "=" * 60,
        "Attendance Import Report",
        f"  status: {result.status.value} (HTTP {result.http_status})",
        "=" * 60,
        f"  rows read:            {counters.rows_read}",
        f"  rows rejected:        {counters.rows_rejected}",
        f"  rows failed to save:  {counters.rows_failed_reconcile}",
        f"  rows reconciled:      {counters.rows_reconciled}",
        f"  venues upserted:      {counters.venues_upserted}",
        f"  trainers inserted:    {counters.trainers_inserted}",
        f"  trainers updated:     {counters.trainers_updated}",
        f"  persons inserted:     {counters.persons_inserted}",
        f"  persons updated:      {counters.persons_updated}",
        f"    → resurrected:      {counters.persons_resurrected}",
        f"  events upserted:      {counters.events_upserted}",
        f"  attendance upserted:  {counters.attendance_upserted}",
        f"  chunks committed:     {counters.chunks_committed}",
        f"Chunk failures:         {counters.chunk_failures}",
    ]
    if result.missing_headers:
        lines.append(f"\nMissing headers: {', '.join(result.missing_headers)}")
        lines.append(f"Found headers:   {', '.join(result.found_headers or [])}")
    if result.errors:
        lines.append(f"\nErrors ({result.error_count}):")
        for e in result.errors:
            lines.append(f"  {e}")
        if (result.error_count or 0) > len(result.errors):
            lines.append("  ...")
    lines.append("=" * 60)
    return "\n".join(lines)
