# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Symbol storage helpers (SQLite-backed).

Provides a thin wrapper around the `symbols` table so `IndexStore` can
delegate symbol persistence. Callers hold the store lock and own the
surrounding transaction.
"""
from __future__ import annotations

import json
import sqlite3
from typing import Iterable, Iterator, List

from ..analysis import Symbol

_SELECT = """
    SELECT s.id, s.name, s.kind, f.path, s.line, s.end_line, s.signature,
           s.scope, s.content, s.doc, s.modifiers_json
    FROM symbols s
    JOIN files f ON s.file_id = f.id
"""


def _row_to_symbol(r) -> Symbol:
    modifiers = tuple(json.loads(r[10])) if r[10] else ()
    return Symbol(
        name=r[1],
        kind=r[2],
        file_path=r[3],
        line=r[4],
        end_line=r[5],
        signature=r[6],
        scope=r[7],
        content=r[8] or "",
        doc=r[9],
        modifiers=modifiers,
    )


class SymbolStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def store_symbols_for_file(self, file_id: int, symbols: Iterable[Symbol]) -> int:
        """Insert the provided symbols for a file with a single executemany."""
        symbols = list(symbols)
        if not symbols:
            return 0
        self.conn.executemany(
            """
            INSERT INTO symbols (
                file_id, name, kind, line, end_line, signature, scope, content, doc, modifiers_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    file_id,
                    s.name,
                    s.kind,
                    s.line,
                    s.end_line,
                    s.signature,
                    s.scope,
                    s.content,
                    s.doc,
                    json.dumps(list(s.modifiers)) if s.modifiers else None,
                )
                for s in symbols
            ],
        )
        return len(symbols)

    def delete_symbols_for_file(self, file_id: int) -> None:
        self.conn.execute("DELETE FROM symbols WHERE file_id = ?", (file_id,))

    def get_symbols_for_file(self, file_id: int) -> List[Symbol]:
        rows = self.conn.execute(
            _SELECT + " WHERE s.file_id = ? ORDER BY s.line, s.id", (file_id,)
        ).fetchall()
        return [_row_to_symbol(r) for r in rows]

    def page_after(self, last_id: int, page_size: int) -> list[tuple[int, Symbol]]:
        """One page of the full symbol table, keyed by row id for resumable scans."""
        rows = self.conn.execute(
            _SELECT + " WHERE s.id > ? ORDER BY s.id LIMIT ?", (last_id, page_size)
        ).fetchall()
        return [(r[0], _row_to_symbol(r)) for r in rows]

    def search(self, pattern: str, limit: int = 100) -> List[Symbol]:
        """Case-insensitive substring match on symbol names."""
        escaped = pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self.conn.execute(
            _SELECT + " WHERE s.name LIKE ? ESCAPE '\\' ORDER BY f.path, s.line LIMIT ?",
            (f"%{escaped}%", limit),
        ).fetchall()
        return [_row_to_symbol(r) for r in rows]

    def iter_names(self) -> Iterator[tuple[str, str]]:
        """Yield ``(path, name)`` pairs for every symbol."""
        for path, name in self.conn.execute(
            "SELECT f.path, s.name FROM symbols s JOIN files f ON s.file_id = f.id"
        ).fetchall():
            yield path, name

    def count(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM symbols").fetchone()[0])
