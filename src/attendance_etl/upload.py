"""attendance_etl.upload

Upload endpoint contract for an outside HTTP layer.

The form carries one file under the field name `file`.  The response is a
status code plus a JSON-ready body:

  200  full success      {message, processedCount, errorCount}
  207  partial success   {message, processedCount, errorCount, errors}
  400  failure           {error, missingHeaders?, ...} or all rows rejected
  500  internal fault    {error}   (no internal detail)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import psycopg

from attendance_etl.pipeline import ImportConfig, run_import

log = logging.getLogger(__name__)

FILE_FIELD = "file"
FAULT_MESSAGE = "Internal server error during import"


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content: bytes


@dataclass(frozen=True)
class UploadResponse:
    status_code: int
    body: dict[str, Any]


def handle_upload(
    form: Mapping[str, Any],
    connect: Callable[[], psycopg.Connection],
    config: ImportConfig | None = None,
) -> UploadResponse:
    """Run one import for an uploaded form.

    `connect` must return an autocommit connection; it is closed before
    returning.
    """
    upload = form.get(FILE_FIELD)
    if not isinstance(upload, UploadedFile):
        return UploadResponse(400, {"error": "No file uploaded"})

    try:
        with connect() as conn:
            result = run_import(conn, upload.content, upload.filename, config=config)
    except Exception:
        log.exception("import of %r failed", upload.filename)
        return UploadResponse(500, {"error": FAULT_MESSAGE})

    return UploadResponse(result.http_status, result.to_response())
