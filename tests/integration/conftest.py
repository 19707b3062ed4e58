"""Fixtures for the PostgreSQL-backed tests.

pytest-postgresql starts a throwaway server and the schema in migrations/ is
loaded fresh for each test. Without pg_ctl on PATH the whole directory is
skipped.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from roster_watch.store import PostgresStore

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_core_tables.sql",
]

HERE = Path(__file__).parent


def pytest_collection_modifyitems(config, items):
    if shutil.which("pg_ctl") or shutil.which("pg_config"):
        return
    skip = pytest.mark.skip(reason="PostgreSQL binaries (pg_ctl) not found")
    for item in items:
        if HERE in Path(str(item.fspath)).parents:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Server and schema
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


@pytest.fixture
def db_conn(postgresql):
    """Autocommit connection to a freshly migrated database, plus its DSN."""
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def pg_store(db_conn) -> PostgresStore:
    conn, _ = db_conn
    return PostgresStore(conn)
