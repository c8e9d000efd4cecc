"""Integration test fixtures.

Applies every migration in migrations/ against an ephemeral PostgreSQL
database provided by pytest-postgresql before each integration test.
Tests are skipped when no PostgreSQL server binaries are installed.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = sorted((PROJECT_ROOT / "migrations").glob("*.sql"))

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


def _pg_ctl_available() -> bool:
    """True when pg_ctl is on PATH or in the directory pg_config reports."""
    if shutil.which("pg_ctl"):
        return True
    pg_config = shutil.which("pg_config")
    if pg_config is None:
        return False
    bindir = subprocess.run(
        [pg_config, "--bindir"], capture_output=True, text=True, check=False,
    ).stdout.strip()
    return bool(bindir) and (Path(bindir) / "pg_ctl").is_file()


# ---------------------------------------------------------------------------
# Schema fixture: applies all migrations for each test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(request):
    """Return (autocommit psycopg connection, dsn) with the schema applied.

    Each test gets a fresh database via function scope so tests are isolated.
    """
    if not _pg_ctl_available():
        pytest.skip("PostgreSQL server binaries not available")
    pg = request.getfixturevalue("postgresql")
    dsn = (
        f"host={pg.info.host} "
        f"port={pg.info.port} "
        f"dbname={pg.info.dbname} "
        f"user={pg.info.user} "
        f"password={pg.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()
