# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Versioned schema migrations for the SQLite index store.

Every migration runs inside its own transaction together with the bump of
``schema_version``; a failing migration is rolled back and the version stays
at the last migration that fully applied. All statements are written with
``IF NOT EXISTS`` / ``OR IGNORE`` so a re-run against a partially migrated
database is harmless.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Sequence

from ..errors import StoreIntegrityError

logger = logging.getLogger(__name__)

SCHEMA_VERSION_KEY = "schema_version"

# Terminal audit entries older than this are pruned (milliseconds).
AUDIT_RETENTION_MS = 7 * 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        1,
        "initial_schema",
        (
            """
            CREATE TABLE IF NOT EXISTS files (
                id INTEGER PRIMARY KEY,
                path TEXT NOT NULL UNIQUE,
                last_modified REAL,
                language TEXT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS symbols (
                id INTEGER PRIMARY KEY,
                file_id INTEGER NOT NULL REFERENCES files(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                kind TEXT NOT NULL,
                line INTEGER NOT NULL,
                end_line INTEGER,
                signature TEXT,
                scope TEXT,
                content TEXT,
                doc TEXT,
                modifiers_json TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_symbols_file ON symbols(file_id)",
            "CREATE INDEX IF NOT EXISTS idx_symbols_name ON symbols(name)",
            """
            CREATE TABLE IF NOT EXISTS dependencies (
                id INTEGER PRIMARY KEY,
                source_file_id INTEGER NOT NULL REFERENCES files(id) ON DELETE CASCADE,
                target_path TEXT NOT NULL,
                kind TEXT NOT NULL,
                weight REAL NOT NULL DEFAULT 1.0,
                metadata_json TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_dependencies_source ON dependencies(source_file_id)",
            "CREATE INDEX IF NOT EXISTS idx_dependencies_target ON dependencies(target_path)",
            """
            CREATE TABLE IF NOT EXISTS unresolved_dependencies (
                id INTEGER PRIMARY KEY,
                source_file_id INTEGER NOT NULL REFERENCES files(id) ON DELETE CASCADE,
                specifier TEXT NOT NULL,
                error TEXT,
                metadata_json TEXT
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_unresolved_source
            ON unresolved_dependencies(source_file_id)
            """,
        ),
    ),
    Migration(
        2,
        "transaction_log",
        (
            """
            CREATE TABLE IF NOT EXISTS transaction_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp INTEGER NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('pending', 'committed', 'rolled_back')),
                description TEXT,
                payload_json TEXT
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_transaction_log_status_ts
            ON transaction_log(status, timestamp)
            """,
            f"""
            CREATE TRIGGER IF NOT EXISTS prune_transaction_log
            AFTER INSERT ON transaction_log
            BEGIN
                DELETE FROM transaction_log
                WHERE status IN ('committed', 'rolled_back')
                  AND timestamp < NEW.timestamp - {AUDIT_RETENTION_MS};
            END
            """,
        ),
    ),
    Migration(
        3,
        "trigram_stats",
        (
            """
            CREATE TABLE IF NOT EXISTS trigram_stats (
                file_id INTEGER PRIMARY KEY REFERENCES files(id) ON DELETE CASCADE,
                word_count INTEGER NOT NULL,
                unique_trigrams INTEGER NOT NULL,
                total_trigrams INTEGER NOT NULL
            )
            """,
        ),
    ),
    Migration(
        4,
        "document_chunks",
        (
            """
            CREATE TABLE IF NOT EXISTS document_chunks (
                id TEXT PRIMARY KEY,
                file_id INTEGER NOT NULL REFERENCES files(id) ON DELETE CASCADE,
                ordinal INTEGER NOT NULL,
                start_line INTEGER NOT NULL,
                end_line INTEGER NOT NULL,
                start_char INTEGER NOT NULL,
                end_char INTEGER NOT NULL,
                content_hash TEXT NOT NULL,
                text TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_chunks_file ON document_chunks(file_id, ordinal)",
        ),
    ),
    Migration(
        5,
        "chunk_embeddings",
        (
            """
            CREATE TABLE IF NOT EXISTS chunk_embeddings (
                chunk_id TEXT NOT NULL REFERENCES document_chunks(id) ON DELETE CASCADE,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                dims INTEGER NOT NULL,
                vector BLOB NOT NULL,
                norm REAL NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (chunk_id, provider, model)
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_embeddings_provider_model
            ON chunk_embeddings(provider, model)
            """,
        ),
    ),
    Migration(
        6,
        "evidence_packs",
        (
            """
            CREATE TABLE IF NOT EXISTS evidence_packs (
                id TEXT PRIMARY KEY,
                query TEXT NOT NULL,
                options_json TEXT,
                created_at INTEGER NOT NULL,
                expires_at INTEGER
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS evidence_pack_items (
                pack_id TEXT NOT NULL REFERENCES evidence_packs(id) ON DELETE CASCADE,
                rank INTEGER NOT NULL,
                path TEXT NOT NULL,
                line INTEGER,
                score REAL NOT NULL,
                preview TEXT,
                payload_json TEXT,
                PRIMARY KEY (pack_id, rank)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_evidence_expires ON evidence_packs(expires_at)",
        ),
    ),
)

LATEST_VERSION = MIGRATIONS[-1].version


class MigrationRunner:
    """Applies pending migrations to a connection opened with ``isolation_level=None``."""

    def __init__(self, conn: sqlite3.Connection, migrations: Sequence[Migration] = MIGRATIONS):
        versions = [m.version for m in migrations]
        if versions != sorted(set(versions)):
            raise ValueError("Migration versions must be unique and ascending")
        self.conn = conn
        self.migrations = tuple(migrations)
        self._ensure_metadata_table()

    def _ensure_metadata_table(self) -> None:
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS metadata (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
        )

    def current_version(self) -> int:
        row = self.conn.execute(
            "SELECT value FROM metadata WHERE key = ?", (SCHEMA_VERSION_KEY,)
        ).fetchone()
        if not row:
            return 0
        try:
            return int(row[0])
        except (TypeError, ValueError):
            raise StoreIntegrityError(f"Unreadable schema_version {row[0]!r}") from None

    def pending(self) -> list[Migration]:
        current = self.current_version()
        return [m for m in self.migrations if m.version > current]

    def apply_migrations(self) -> int:
        """Apply every pending migration and return the resulting schema version."""
        pending = self.pending()
        if not pending:
            return self.current_version()

        for migration in pending:
            logger.info("Applying migration %d (%s)", migration.version, migration.name)
            try:
                self.conn.execute("BEGIN IMMEDIATE")
                for statement in migration.statements:
                    self.conn.execute(statement)
                self.conn.execute(
                    "INSERT INTO metadata (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (SCHEMA_VERSION_KEY, str(migration.version)),
                )
                self.conn.execute("COMMIT")
            except Exception as exc:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                logger.exception(
                    "Migration %d (%s) failed; schema left at version %d",
                    migration.version,
                    migration.name,
                    self.current_version(),
                )
                raise StoreIntegrityError(
                    f"Migration {migration.version} ({migration.name}) failed: {exc}",
                    version=migration.version,
                ) from exc

        return self.current_version()
