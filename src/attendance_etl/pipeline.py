"""attendance_etl.pipeline

One bulk attendance import, end to end:

    decode -> map headers -> validate rows -> resolve identities
           -> reconcile (chunked upserts) -> report

Structural problems (unsupported file, empty file, missing mandatory
headers) end the run before any write and come back as a FAILED result.
From row validation onward the run always produces a report.  Anything
else (e.g. the database going away) propagates to the caller.

Usage:
    conn = psycopg.connect(dsn, autocommit=True)
    result = run_import(conn, data, "lessons.xlsx")
    result.http_status, result.to_response()
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

import psycopg

from attendance_etl.headers import (
    HeaderAliases,
    default_header_aliases,
    map_headers,
)
from attendance_etl.reconcile import reconcile_entities
from attendance_etl.report import (
    MAX_REPORTED_ERRORS,
    ImportResult,
    ImportState,
    build_import_result,
    build_structural_failure,
    check_transition,
)
from attendance_etl.resolve import resolve_entities
from attendance_etl.shared import (
    EmptyFileError,
    ImportStructureError,
    MissingHeadersError,
    NullRejectWriter,
    RejectWriter,
    RunCounters,
)
from attendance_etl.tabular import decode_upload
from attendance_etl.validate import validate_rows

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportConfig:
    batch_size: int = 50
    field_separator: str = ","
    line_separator: str | None = None
    max_reported_errors: int = MAX_REPORTED_ERRORS
    statement_timeout_ms: int | None = None
    default_venue_name: str = "Unspecified"
    default_event_type: str = "Group"
    email_domain: str = "imported.local"
    aliases: HeaderAliases = field(default_factory=default_header_aliases)

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if len(self.field_separator) != 1:
            raise ValueError(
                f"field_separator must be a single character, got {self.field_separator!r}"
            )


class ImportRun:
    """Tracks the state of one import invocation."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self.state = ImportState.RECEIVED
        self.history = [ImportState.RECEIVED]

    def advance(self, target: ImportState) -> None:
        check_transition(self.state, target)
        log.debug("[%s] %s -> %s", self.run_id, self.state.value, target.value)
        self.state = target
        self.history.append(target)

    def fail(self, exc: ImportStructureError, config: ImportConfig) -> ImportResult:
        self.advance(ImportState.FAILED)
        log.info("[%s] import failed: %s", self.run_id, exc)
        return build_structural_failure(exc, expected_headers=config.aliases.mandatory)


def run_import(
    conn: psycopg.Connection,
    data: bytes,
    filename: str,
    config: ImportConfig | None = None,
    counters: RunCounters | None = None,
    rejects: RejectWriter | NullRejectWriter | None = None,
    run_id: str | None = None,
    run: ImportRun | None = None,
) -> ImportResult:
    config = config or ImportConfig()
    counters = counters if counters is not None else RunCounters()
    rejects = rejects if rejects is not None else NullRejectWriter()
    run = run or ImportRun(run_id or str(uuid.uuid4()))

    log.info("[%s] import of %r (%d bytes) received", run.run_id, filename, len(data))

    # Step 1: decode
    try:
        table = decode_upload(
            data, filename,
            field_separator=config.field_separator,
            line_separator=config.line_separator,
        )
    except EmptyFileError as exc:
        run.advance(ImportState.DECODED)
        return run.fail(exc, config)
    except ImportStructureError as exc:
        return run.fail(exc, config)
    run.advance(ImportState.DECODED)

    # Step 2: headers
    try:
        mapping = map_headers(table.headers, config.aliases, table.labels)
    except MissingHeadersError as exc:
        run.advance(ImportState.HEADERS_VALIDATED)
        return run.fail(exc, config)
    run.advance(ImportState.HEADERS_VALIDATED)

    # Step 3: rows
    validation = validate_rows(table.rows, mapping, counters, rejects)
    run.advance(ImportState.ROWS_VALIDATED)

    # Step 4: identities
    entities = resolve_entities(
        validation.valid,
        default_venue_name=config.default_venue_name,
        default_event_type=config.default_event_type,
        email_domain=config.email_domain,
    )
    run.advance(ImportState.ENTITIES_RESOLVED)
    log.info(
        "[%s] %d valid rows, %d rejected; resolved %d venues, %d trainers, "
        "%d persons, %d events, %d attendance",
        run.run_id, len(validation.valid), len(validation.rejected),
        len(entities.venues), len(entities.trainers), len(entities.persons),
        len(entities.events), len(entities.attendance),
    )

    # Step 5: persistence
    reconciled = reconcile_entities(
        conn, entities, counters,
        batch_size=config.batch_size,
        statement_timeout_ms=config.statement_timeout_ms,
    )
    run.advance(ImportState.RECONCILED)

    counters.rows_failed_reconcile = len(reconciled.failed_rows)
    counters.rows_reconciled = len(validation.valid) - len(reconciled.failed_rows)

    # Step 6: report
    messages = [r.message for r in validation.rejected]
    messages += [f.message for f in reconciled.failures]
    result = build_import_result(
        total_rows=len(table.rows),
        processed_count=counters.rows_reconciled,
        error_messages=messages,
        max_errors=config.max_reported_errors,
    )
    run.advance(ImportState.REPORTED)
    log.info(
        "[%s] import %s: %d processed, %d errors",
        run.run_id, result.status.value, result.processed_count, result.error_count,
    )
    return result
