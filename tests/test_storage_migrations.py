import sqlite3

import pytest

from codescope.errors import StoreIntegrityError
from codescope.storage.migrations import (LATEST_VERSION, MIGRATIONS, Migration,
                                          MigrationRunner)


def _conn():
    conn = sqlite3.connect(":memory:", isolation_level=None)
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def _tables(conn):
    return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}


def test_fresh_database_reaches_latest_version():
    conn = _conn()
    runner = MigrationRunner(conn)
    assert runner.current_version() == 0
    assert len(runner.pending()) == len(MIGRATIONS)
    assert runner.apply_migrations() == LATEST_VERSION
    assert {"files", "symbols", "dependencies", "document_chunks", "chunk_embeddings",
            "transaction_log", "evidence_packs"} <= _tables(conn)


def test_rerun_is_a_noop():
    conn = _conn()
    MigrationRunner(conn).apply_migrations()
    runner = MigrationRunner(conn)
    assert runner.pending() == []
    assert runner.apply_migrations() == LATEST_VERSION


def test_failed_migration_rolls_back_and_keeps_version():
    conn = _conn()
    broken = Migration(
        2,
        "broken",
        (
            "CREATE TABLE half_done (id INTEGER PRIMARY KEY)",
            "INSERT INTO table_that_does_not_exist VALUES (1)",
        ),
    )
    runner = MigrationRunner(conn, migrations=(MIGRATIONS[0], broken))
    with pytest.raises(StoreIntegrityError) as excinfo:
        runner.apply_migrations()
    assert excinfo.value.version == 2
    assert runner.current_version() == 1
    assert "half_done" not in _tables(conn)
    assert not conn.in_transaction


def test_versions_must_ascend():
    with pytest.raises(ValueError):
        MigrationRunner(_conn(), migrations=(MIGRATIONS[1], MIGRATIONS[0]))
