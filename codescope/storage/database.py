# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""SQLite index store for codescope.

One database per project root. The connection runs in autocommit mode and
every multi-statement write is wrapped in an explicit ``BEGIN IMMEDIATE``
transaction under a re-entrant lock, so a reader never sees a file whose
children are half replaced.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

import numpy as np

from ..analysis import Dependency, DocumentChunk, Symbol, UnresolvedImport
from ..analysis.symbols import normalize_path
from .embeddings import EmbeddingRecord, EmbeddingStore
from .evidence import EvidenceStore
from .migrations import AUDIT_RETENTION_MS, MigrationRunner
from .symbols import SymbolStore
from .trigram import TrigramStats

logger = logging.getLogger(__name__)

AUDIT_STATUSES = ("pending", "committed", "rolled_back")
DEPENDENCY_DIRECTIONS = ("outgoing", "incoming")

_PAGE_SIZE = 500


@dataclass(frozen=True)
class IndexedFile:
    id: int
    path: str
    last_modified: float | None
    language: str | None


def _now_ms() -> int:
    return int(time.time() * 1000)


def _dumps(value: dict[str, Any] | None) -> str | None:
    return json.dumps(value, sort_keys=True, default=str) if value else None


def _loads(raw: str | None) -> dict[str, Any]:
    return json.loads(raw) if raw else {}


class IndexStore:
    def __init__(self, db_path: Path, *, timeout: float = 60.0):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._timeout = timeout
        self.conn = sqlite3.connect(
            db_path, check_same_thread=False, timeout=timeout, isolation_level=None
        )
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=60000;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self._lock = threading.RLock()
        self.symbols = SymbolStore(self.conn)
        self.embeddings = EmbeddingStore(self.conn)
        self.evidence = EvidenceStore(self.conn)
        with self._lock:
            self._schema_version = MigrationRunner(self.conn).apply_migrations()
        logger.info("Opened index store %s (schema_version=%d)", db_path, self._schema_version)

    @property
    def schema_version(self) -> int:
        return self._schema_version

    def close(self) -> None:
        try:
            self.conn.close()
        except Exception:
            logger.debug("Error closing index database", exc_info=True)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self.conn.in_transaction:
                yield self.conn
                return
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    # --- files -------------------------------------------------------------

    def _upsert_file(self, path: str, last_modified: float | None, language: str | None) -> int:
        self.conn.execute(
            """
            INSERT INTO files (path, last_modified, language) VALUES (?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                last_modified = COALESCE(excluded.last_modified, files.last_modified),
                language = COALESCE(excluded.language, files.language)
            """,
            (path, last_modified, language),
        )
        row = self.conn.execute("SELECT id FROM files WHERE path = ?", (path,)).fetchone()
        return int(row[0])

    def _file_id(self, path: str) -> int | None:
        row = self.conn.execute(
            "SELECT id FROM files WHERE path = ?", (normalize_path(path),)
        ).fetchone()
        return int(row[0]) if row else None

    def get_file(self, path: str) -> IndexedFile | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT id, path, last_modified, language FROM files WHERE path = ?",
                (normalize_path(path),),
            ).fetchone()
        return IndexedFile(*row) if row else None

    def list_files(self) -> list[str]:
        with self._lock:
            return [r[0] for r in self.conn.execute("SELECT path FROM files ORDER BY path")]

    def delete_file(self, path: str) -> bool:
        """Remove a file and (by cascade) everything it owns."""
        path = normalize_path(path)
        with self._transaction():
            cur = self.conn.execute("DELETE FROM files WHERE path = ?", (path,))
            removed = cur.rowcount > 0
            if removed:
                self._append_audit("committed", f"delete_file {path}", {"path": path})
        return removed

    def delete_files_by_prefix(self, prefix: str) -> int:
        prefix = normalize_path(prefix)
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._transaction():
            cur = self.conn.execute(
                "DELETE FROM files WHERE path LIKE ? ESCAPE '\\'", (f"{escaped}%",)
            )
            count = cur.rowcount
            if count:
                self._append_audit(
                    "committed", f"delete_files_by_prefix {prefix}", {"count": count}
                )
        return count

    def replace_file(
        self,
        path: str,
        *,
        last_modified: float | None = None,
        language: str | None = None,
        symbols: Iterable[Symbol] = (),
        dependencies: Iterable[Dependency] = (),
        unresolved: Iterable[UnresolvedImport] = (),
        chunks: Sequence[DocumentChunk] = (),
        trigram_stats: TrigramStats | None = None,
    ) -> list[str]:
        """Atomically replace a file's whole subtree.

        Chunks whose id survives keep their embeddings. Returns the ids of
        chunks that no longer exist (their embeddings are gone too).
        """
        path = normalize_path(path)
        new_ids = {c.id for c in chunks}
        with self._transaction():
            file_id = self._upsert_file(path, last_modified, language)
            self.symbols.delete_symbols_for_file(file_id)
            self.symbols.store_symbols_for_file(file_id, symbols)
            self._replace_dependencies(file_id, path, dependencies, unresolved)

            old_ids = {
                r[0]
                for r in self.conn.execute(
                    "SELECT id FROM document_chunks WHERE file_id = ?", (file_id,)
                )
            }
            removed = sorted(old_ids - new_ids)
            if removed:
                self.conn.executemany(
                    "DELETE FROM document_chunks WHERE id = ?", [(cid,) for cid in removed]
                )
            self.conn.executemany(
                """
                INSERT INTO document_chunks (
                    id, file_id, ordinal, start_line, end_line, start_char, end_char,
                    content_hash, text
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    file_id = excluded.file_id,
                    ordinal = excluded.ordinal,
                    start_line = excluded.start_line,
                    end_line = excluded.end_line,
                    start_char = excluded.start_char,
                    end_char = excluded.end_char
                """,
                [
                    (
                        c.id,
                        file_id,
                        c.ordinal,
                        c.start_line,
                        c.end_line,
                        c.start_char,
                        c.end_char,
                        c.content_hash,
                        c.text,
                    )
                    for c in chunks
                ],
            )

            if trigram_stats is None:
                self.conn.execute("DELETE FROM trigram_stats WHERE file_id = ?", (file_id,))
            else:
                self.conn.execute(
                    """
                    INSERT INTO trigram_stats (file_id, word_count, unique_trigrams, total_trigrams)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(file_id) DO UPDATE SET
                        word_count = excluded.word_count,
                        unique_trigrams = excluded.unique_trigrams,
                        total_trigrams = excluded.total_trigrams
                    """,
                    (
                        file_id,
                        trigram_stats.word_count,
                        trigram_stats.unique_trigrams,
                        trigram_stats.total_trigrams,
                    ),
                )
            self._append_audit(
                "committed",
                f"replace_file {path}",
                {"path": path, "chunks": len(new_ids), "removed_chunks": len(removed)},
            )
        return removed

    # --- symbols -----------------------------------------------------------

    def replace_symbols(
        self,
        path: str,
        symbols: Iterable[Symbol],
        last_modified: float | None = None,
        language: str | None = None,
    ) -> None:
        path = normalize_path(path)
        with self._transaction():
            file_id = self._upsert_file(path, last_modified, language)
            self.symbols.delete_symbols_for_file(file_id)
            self.symbols.store_symbols_for_file(file_id, symbols)

    def read_symbols(self, path: str) -> list[Symbol] | None:
        with self._lock:
            file_id = self._file_id(path)
            if file_id is None:
                return None
            return self.symbols.get_symbols_for_file(file_id)

    def search_symbols(self, pattern: str, limit: int = 100) -> list[Symbol]:
        with self._lock:
            return self.symbols.search(pattern, limit)

    def stream_all_symbols(self) -> Iterator[Symbol]:
        """Lazily scan every stored symbol from one read snapshot.

        The scan pages over a dedicated connection inside a single read
        transaction. Under WAL that pins the snapshot taken by the first
        page, so a file re-indexed mid-scan is seen entirely in its old
        version and never as a mix of old and new symbols.
        """
        reader = sqlite3.connect(
            self.db_path, check_same_thread=False, timeout=self._timeout, isolation_level=None
        )
        try:
            reader.execute("BEGIN")
            pages = SymbolStore(reader)
            last_id = 0
            while True:
                page = pages.page_after(last_id, _PAGE_SIZE)
                if not page:
                    break
                for row_id, symbol in page:
                    last_id = row_id
                    yield symbol
            reader.execute("COMMIT")
        finally:
            reader.close()

    def symbol_names(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self.symbols.iter_names())

    # --- dependencies ------------------------------------------------------

    def _replace_dependencies(
        self,
        file_id: int,
        path: str,
        outgoing: Iterable[Dependency],
        unresolved: Iterable[UnresolvedImport],
    ) -> None:
        self.conn.execute("DELETE FROM dependencies WHERE source_file_id = ?", (file_id,))
        self.conn.execute(
            "DELETE FROM unresolved_dependencies WHERE source_file_id = ?", (file_id,)
        )
        self.conn.executemany(
            "INSERT INTO dependencies (source_file_id, target_path, kind, weight, metadata_json) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (file_id, normalize_path(d.target), d.kind, float(d.weight), _dumps(d.metadata))
                for d in outgoing
            ],
        )
        self.conn.executemany(
            "INSERT INTO unresolved_dependencies (source_file_id, specifier, error, metadata_json) "
            "VALUES (?, ?, ?, ?)",
            [(file_id, u.specifier, u.error, _dumps(u.metadata)) for u in unresolved],
        )

    def replace_dependencies(
        self,
        path: str,
        outgoing: Iterable[Dependency],
        unresolved: Iterable[UnresolvedImport] = (),
    ) -> None:
        path = normalize_path(path)
        with self._transaction():
            file_id = self._upsert_file(path, None, None)
            self._replace_dependencies(file_id, path, outgoing, unresolved)

    def get_dependencies(self, path: str, direction: str = "outgoing") -> list[Dependency]:
        if direction not in DEPENDENCY_DIRECTIONS:
            raise ValueError(f"direction must be one of {DEPENDENCY_DIRECTIONS}, got {direction!r}")
        path = normalize_path(path)
        column = "f.path" if direction == "outgoing" else "d.target_path"
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT f.path, d.target_path, d.kind, d.weight, d.metadata_json
                FROM dependencies d
                JOIN files f ON d.source_file_id = f.id
                WHERE {column} = ?
                ORDER BY f.path, d.target_path, d.id
                """,
                (path,),
            ).fetchall()
        return [
            Dependency(source=r[0], target=r[1], kind=r[2], weight=r[3], metadata=_loads(r[4]))
            for r in rows
        ]

    def count_dependencies(self, path: str, direction: str = "outgoing") -> int:
        return len(self.get_dependencies(path, direction))

    def list_unresolved(self) -> list[UnresolvedImport]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT f.path, u.specifier, u.error, u.metadata_json
                FROM unresolved_dependencies u
                JOIN files f ON u.source_file_id = f.id
                ORDER BY f.path, u.id
                """
            ).fetchall()
        return [
            UnresolvedImport(source=r[0], specifier=r[1], error=r[2], metadata=_loads(r[3]))
            for r in rows
        ]

    def list_unresolved_for_file(self, path: str) -> list[UnresolvedImport]:
        path = normalize_path(path)
        return [u for u in self.list_unresolved() if u.source == path]

    def clear_dependencies(self, path: str) -> None:
        with self._transaction():
            file_id = self._file_id(path)
            if file_id is None:
                return
            self.conn.execute("DELETE FROM dependencies WHERE source_file_id = ?", (file_id,))
            self.conn.execute(
                "DELETE FROM unresolved_dependencies WHERE source_file_id = ?", (file_id,)
            )

    # --- trigram stats -----------------------------------------------------

    def get_trigram_stats(self, path: str) -> TrigramStats | None:
        with self._lock:
            row = self.conn.execute(
                """
                SELECT t.word_count, t.unique_trigrams, t.total_trigrams
                FROM trigram_stats t JOIN files f ON t.file_id = f.id
                WHERE f.path = ?
                """,
                (normalize_path(path),),
            ).fetchone()
        return TrigramStats(*row) if row else None

    def iter_trigram_stats(self) -> Iterator[tuple[str, TrigramStats]]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT f.path, t.word_count, t.unique_trigrams, t.total_trigrams
                FROM trigram_stats t JOIN files f ON t.file_id = f.id
                ORDER BY f.path
                """
            ).fetchall()
        for r in rows:
            yield r[0], TrigramStats(r[1], r[2], r[3])

    # --- chunks ------------------------------------------------------------

    _CHUNK_COLUMNS = (
        "c.id, f.path, c.ordinal, c.text, c.start_line, c.end_line, "
        "c.start_char, c.end_char, c.content_hash"
    )

    @staticmethod
    def _row_to_chunk(r) -> DocumentChunk:
        return DocumentChunk(
            id=r[0],
            file_path=r[1],
            ordinal=r[2],
            text=r[3],
            start_line=r[4],
            end_line=r[5],
            start_char=r[6],
            end_char=r[7],
            content_hash=r[8],
        )

    def list_chunks_for_file(self, path: str) -> list[DocumentChunk]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {self._CHUNK_COLUMNS} FROM document_chunks c "
                "JOIN files f ON c.file_id = f.id WHERE f.path = ? ORDER BY c.ordinal",
                (normalize_path(path),),
            ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def get_chunks(self, chunk_ids: Sequence[str]) -> dict[str, DocumentChunk]:
        out: dict[str, DocumentChunk] = {}
        ids = list(dict.fromkeys(chunk_ids))
        with self._lock:
            for start in range(0, len(ids), _PAGE_SIZE):
                batch = ids[start : start + _PAGE_SIZE]
                placeholders = ",".join("?" * len(batch))
                for r in self.conn.execute(
                    f"SELECT {self._CHUNK_COLUMNS} FROM document_chunks c "
                    f"JOIN files f ON c.file_id = f.id WHERE c.id IN ({placeholders})",
                    batch,
                ):
                    out[r[0]] = self._row_to_chunk(r)
        return out

    def chunk_ids_for_file(self, path: str) -> list[str]:
        return [c.id for c in self.list_chunks_for_file(path)]

    def iter_chunks(self) -> Iterator[DocumentChunk]:
        last_rowid = 0
        while True:
            with self._lock:
                rows = self.conn.execute(
                    f"SELECT c.rowid, {self._CHUNK_COLUMNS} FROM document_chunks c "
                    "JOIN files f ON c.file_id = f.id WHERE c.rowid > ? "
                    "ORDER BY c.rowid LIMIT ?",
                    (last_rowid, _PAGE_SIZE),
                ).fetchall()
            if not rows:
                return
            for r in rows:
                last_rowid = r[0]
                yield self._row_to_chunk(r[1:])

    def list_chunks_missing_embeddings(
        self, provider: str, model: str, limit: int = 100
    ) -> list[DocumentChunk]:
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT {self._CHUNK_COLUMNS} FROM document_chunks c
                JOIN files f ON c.file_id = f.id
                WHERE NOT EXISTS (
                    SELECT 1 FROM chunk_embeddings e
                    WHERE e.chunk_id = c.id AND e.provider = ? AND e.model = ?
                )
                ORDER BY f.path, c.ordinal
                LIMIT ?
                """,
                (provider, model, limit),
            ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def read_file_lines(self, path: str) -> dict[int, str]:
        """Reassemble a file's (non-blank-chunk) lines from its stored chunks."""
        lines: dict[int, str] = {}
        for chunk in self.list_chunks_for_file(path):
            for offset, line in enumerate(chunk.text.split("\n")):
                lines.setdefault(chunk.start_line + offset, line)
        return lines

    def read_file_text(self, path: str) -> str:
        lines = self.read_file_lines(path)
        return "\n".join(lines[n] for n in sorted(lines))

    # --- embeddings --------------------------------------------------------

    def put_embedding(
        self, chunk_id: str, provider: str, model: str, vector: Sequence[float] | np.ndarray
    ) -> bool:
        """Store an embedding unless one already exists for (chunk, provider, model)."""
        with self._lock:
            try:
                return self.embeddings.put(chunk_id, provider, model, vector)
            except sqlite3.IntegrityError:
                logger.debug("Dropping embedding for vanished chunk %s", chunk_id)
                return False

    def get_embedding(self, chunk_id: str, provider: str, model: str) -> EmbeddingRecord | None:
        with self._lock:
            return self.embeddings.get(chunk_id, provider, model)

    def iter_embeddings(
        self, provider: str, model: str, limit: int | None = None
    ) -> Iterator[EmbeddingRecord]:
        last_rowid = 0
        emitted = 0
        while limit is None or emitted < limit:
            with self._lock:
                page = self.embeddings.page_after(provider, model, last_rowid, _PAGE_SIZE)
            if not page:
                return
            for rowid, record in page:
                last_rowid = rowid
                yield record
                emitted += 1
                if limit is not None and emitted >= limit:
                    return

    def count_embeddings(self, provider: str | None = None, model: str | None = None) -> int:
        with self._lock:
            return self.embeddings.count(provider, model)

    # --- audit log ---------------------------------------------------------

    def _append_audit(
        self,
        status: str,
        description: str,
        payload: dict[str, Any] | None = None,
        timestamp_ms: int | None = None,
    ) -> int:
        if status not in AUDIT_STATUSES:
            raise ValueError(f"status must be one of {AUDIT_STATUSES}, got {status!r}")
        cur = self.conn.execute(
            "INSERT INTO transaction_log (timestamp, status, description, payload_json) "
            "VALUES (?, ?, ?, ?)",
            (timestamp_ms if timestamp_ms is not None else _now_ms(), status, description,
             _dumps(payload)),
        )
        return int(cur.lastrowid)

    def append_audit(
        self,
        status: str,
        description: str,
        payload: dict[str, Any] | None = None,
        *,
        timestamp_ms: int | None = None,
    ) -> int:
        with self._transaction():
            return self._append_audit(status, description, payload, timestamp_ms)

    def list_audit(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, timestamp, status, description, payload_json FROM transaction_log "
                "ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            {
                "id": r[0],
                "timestamp": r[1],
                "status": r[2],
                "description": r[3],
                "payload": _loads(r[4]),
            }
            for r in rows
        ]

    def prune_audit_log(self, now_ms: int | None = None) -> int:
        """Delete terminal audit entries older than the retention window."""
        cutoff = (now_ms if now_ms is not None else _now_ms()) - AUDIT_RETENTION_MS
        with self._transaction():
            cur = self.conn.execute(
                "DELETE FROM transaction_log "
                "WHERE status IN ('committed', 'rolled_back') AND timestamp < ?",
                (cutoff,),
            )
            pruned = cur.rowcount
        if pruned:
            logger.info("Pruned %d audit log entries", pruned)
        return pruned

    # --- evidence packs ----------------------------------------------------

    def save_evidence_pack(
        self,
        query: str,
        options: dict[str, Any],
        items: Iterable[dict[str, Any]],
        *,
        ttl_seconds: int | None = None,
        now_ms: int | None = None,
    ) -> str:
        with self._transaction():
            return self.evidence.save(
                query, options, items, ttl_seconds=ttl_seconds, now_ms=now_ms
            )

    def load_evidence_pack(
        self, pack_id: str, *, now_ms: int | None = None
    ) -> dict[str, Any] | None:
        with self._lock:
            return self.evidence.load(pack_id, now_ms=now_ms)

    def prune_evidence_packs(self, now_ms: int | None = None) -> int:
        with self._transaction():
            return self.evidence.prune(now_ms=now_ms)

    # --- stats -------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {}
            for key, table in (
                ("files", "files"),
                ("symbols", "symbols"),
                ("dependencies", "dependencies"),
                ("unresolved", "unresolved_dependencies"),
                ("chunks", "document_chunks"),
                ("embeddings", "chunk_embeddings"),
                ("audit_entries", "transaction_log"),
                ("evidence_packs", "evidence_packs"),
            ):
                counts[key] = int(self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
            counts["schema_version"] = self._schema_version
            return counts
