"""attendance_etl.import_attendance

CLI entrypoint for attendance bulk loads.

Modes (--mode):
  import  : import a CSV / XLSX / XLS attendance upload (default)
  export  : write all attendance records to a CSV file

Usage (import):
    python -m attendance_etl.import_attendance \\
        --mode import \\
        --db-dsn "$DB_DSN" \\
        --file-path "uploads/lessons_2024.xlsx" \\
        --batch-size 50 \\
        --rejects-path "artifacts/rejects/lessons_2024_rejects.csv"

Usage (export):
    python -m attendance_etl.import_attendance \\
        --mode export \\
        --db-dsn "$DB_DSN" \\
        --output-path "artifacts/exports/attendance.csv"
"""

from __future__ import annotations

import codecs
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from attendance_etl.export import write_attendance_csv
from attendance_etl.headers import (
    HeaderAliasError,
    default_header_aliases,
    load_header_aliases,
)
from attendance_etl.pipeline import ImportConfig, run_import
from attendance_etl.report import ImportStatus, build_import_report
from attendance_etl.shared import (
    NullRejectWriter,
    RejectWriter,
    RunCounters,
    write_run_report,
)


def _single_char_separator(ctx: click.Context, param: click.Parameter, value: str) -> str:
    decoded = codecs.decode(value, "unicode_escape")
    if len(decoded) != 1:
        raise click.BadParameter(f"must be a single character, got {value!r}")
    return decoded


@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(["import", "export"]),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (or $DB_DSN)")
# import flags
@click.option("--file-path", default=None, type=click.Path(dir_okay=False), help="[import] Upload file (.csv, .xlsx, .xls)")
@click.option("--batch-size", default=50, type=click.IntRange(min=1), show_default=True, help="[import] Records per transaction")
@click.option("--field-separator", default=",", show_default=True, callback=_single_char_separator, help="[import] CSV field separator, one character (backslash escapes allowed)")
@click.option("--line-separator", default=None, help="[import] CSV line separator, backslash escapes allowed (default: any newline)")
@click.option("--statement-timeout-ms", default=None, type=click.IntRange(min=1), help="[import] Per-chunk statement timeout")
@click.option("--max-errors", default=10, type=click.IntRange(min=0), show_default=True, help="[import] Error lines kept in the result")
@click.option("--aliases-path", default=None, type=click.Path(dir_okay=False), help="[import] Alternate header alias YAML")
@click.option("--rejects-path", default=None, type=click.Path(), help="[import] Write rejected rows to this CSV")
# export flags
@click.option("--output-path", default=None, type=click.Path(dir_okay=False), help="[export] Output CSV")
# shared flags
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--reports-dir", default="./artifacts/reports", show_default=True, type=click.Path(file_okay=False))
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    # import
    file_path: str | None,
    batch_size: int,
    field_separator: str,
    line_separator: str | None,
    statement_timeout_ms: int | None,
    max_errors: int,
    aliases_path: str | None,
    rejects_path: str | None,
    # export
    output_path: str | None,
    # shared
    run_id: str | None,
    reports_dir: str,
    log_level: str,
) -> None:
    """Attendance bulk import / export CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    counters = RunCounters()

    click.echo(f"[{run_id}] Starting {mode} run")

    if mode == "export":
        _validate_export_flags(output_path, run_id)
        _run_export(run_id, db_dsn, output_path)  # type: ignore[arg-type]
        return

    _validate_import_flags(file_path, run_id)
    try:
        aliases = (
            load_header_aliases(Path(aliases_path))
            if aliases_path else default_header_aliases()
        )
    except (HeaderAliasError, OSError) as exc:
        click.echo(f"[{run_id}] FATAL: cannot load header aliases: {exc}", err=True)
        sys.exit(1)

    config = ImportConfig(
        batch_size=batch_size,
        field_separator=field_separator,
        line_separator=(
            codecs.decode(line_separator, "unicode_escape") if line_separator else None
        ),
        max_reported_errors=max_errors,
        statement_timeout_ms=statement_timeout_ms,
        aliases=aliases,
    )
    rejects = RejectWriter(Path(rejects_path)) if rejects_path else NullRejectWriter()

    source = Path(file_path)  # type: ignore[arg-type]
    try:
        data = source.read_bytes()
    except OSError as exc:
        click.echo(f"[{run_id}] FATAL: cannot read {source}: {exc}", err=True)
        sys.exit(1)

    try:
        conn = psycopg.connect(db_dsn, autocommit=True)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: cannot connect to database: {exc}", err=True)
        sys.exit(1)
    try:
        result = run_import(
            conn, data, source.name,
            config=config, counters=counters, rejects=rejects, run_id=run_id,
        )
    except Exception as exc:
        logging.getLogger(__name__).exception("[%s] import fault", run_id)
        click.echo(f"[{run_id}] FATAL: run failed: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()
        rejects.close()

    click.echo(build_import_report(result, counters))

    report_path = write_run_report(
        run_id, started_at, mode,
        {"file_path": str(source), "aliases_version": aliases.version,
         "aliases_hash": aliases.yaml_hash},
        counters,
        result=result.to_dict(),
        reports_dir=Path(reports_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if result.status is ImportStatus.FAILED:
        click.echo(f"[{run_id}] FATAL: {result.message}", err=True)
        sys.exit(1)
    if result.status is ImportStatus.PARTIAL:
        click.echo(f"[{run_id}] {result.message}", err=True)


def _run_export(run_id: str, db_dsn: str, output_path: str) -> None:
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    try:
        with psycopg.connect(db_dsn, autocommit=True) as conn, \
                out.open("w", newline="", encoding="utf-8") as fh:
            count = write_attendance_csv(conn, fh)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: export failed with DB error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Export written: {out} ({count} records)")


def _validate_import_flags(file_path: str | None, run_id: str) -> None:
    if file_path is None:
        click.echo(f"[{run_id}] FATAL: import mode requires: --file-path", err=True)
        sys.exit(1)


def _validate_export_flags(output_path: str | None, run_id: str) -> None:
    if output_path is None:
        click.echo(f"[{run_id}] FATAL: export mode requires: --output-path", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
