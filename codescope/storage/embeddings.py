# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Embedding record storage (SQLite-backed).

Records are keyed by ``(chunk_id, provider, model)`` and are write-once: a
second write for the same key is ignored rather than overwriting the stored
vector. Vectors are stored as raw little-endian float32 bytes.
"""
from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from typing import Sequence

import numpy as np


@dataclass(frozen=True)
class EmbeddingRecord:
    chunk_id: str
    provider: str
    model: str
    dims: int
    vector: np.ndarray
    norm: float
    created_at: int


def _to_blob(vector: Sequence[float] | np.ndarray) -> tuple[bytes, int, float]:
    arr = np.asarray(vector, dtype="<f4").reshape(-1)
    return arr.tobytes(), int(arr.shape[0]), float(np.linalg.norm(arr))


def _row_to_record(r) -> EmbeddingRecord:
    vec = np.frombuffer(r[4], dtype="<f4").astype(np.float32)
    return EmbeddingRecord(
        chunk_id=r[0],
        provider=r[1],
        model=r[2],
        dims=int(r[3]),
        vector=vec,
        norm=float(r[5]),
        created_at=int(r[6]),
    )


_COLUMNS = "chunk_id, provider, model, dims, vector, norm, created_at"


class EmbeddingStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def put(
        self,
        chunk_id: str,
        provider: str,
        model: str,
        vector: Sequence[float] | np.ndarray,
        *,
        created_at: int | None = None,
    ) -> bool:
        """Insert a record if absent. Returns True when a row was written."""
        blob, dims, norm = _to_blob(vector)
        if dims == 0:
            return False
        cur = self.conn.execute(
            f"INSERT OR IGNORE INTO chunk_embeddings ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                chunk_id,
                provider,
                model,
                dims,
                blob,
                norm,
                created_at if created_at is not None else int(time.time() * 1000),
            ),
        )
        return cur.rowcount == 1

    def get(self, chunk_id: str, provider: str, model: str) -> EmbeddingRecord | None:
        row = self.conn.execute(
            f"SELECT {_COLUMNS} FROM chunk_embeddings "
            "WHERE chunk_id = ? AND provider = ? AND model = ?",
            (chunk_id, provider, model),
        ).fetchone()
        return _row_to_record(row) if row else None

    def page_after(
        self, provider: str, model: str, last_rowid: int, page_size: int
    ) -> list[tuple[int, EmbeddingRecord]]:
        rows = self.conn.execute(
            f"SELECT rowid, {_COLUMNS} FROM chunk_embeddings "
            "WHERE provider = ? AND model = ? AND rowid > ? ORDER BY rowid LIMIT ?",
            (provider, model, last_rowid, page_size),
        ).fetchall()
        return [(r[0], _row_to_record(r[1:])) for r in rows]

    def count(self, provider: str | None = None, model: str | None = None) -> int:
        if provider is None:
            return int(self.conn.execute("SELECT COUNT(*) FROM chunk_embeddings").fetchone()[0])
        return int(
            self.conn.execute(
                "SELECT COUNT(*) FROM chunk_embeddings WHERE provider = ? AND model = ?",
                (provider, model),
            ).fetchone()[0]
        )

    def provider_models(self) -> list[tuple[str, str, int]]:
        return [
            (r[0], r[1], int(r[2]))
            for r in self.conn.execute(
                "SELECT provider, model, COUNT(*) FROM chunk_embeddings "
                "GROUP BY provider, model ORDER BY provider, model"
            ).fetchall()
        ]
