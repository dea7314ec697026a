# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Evidence packs: persisted snapshots of a search's ranked results.

A pack lets a consumer re-read exactly what a search returned without
re-running it. Packs expire after a TTL and are pruned explicitly.
"""
from __future__ import annotations

import json
import sqlite3
import time
import uuid
from typing import Any, Iterable


def _now_ms() -> int:
    return int(time.time() * 1000)


class EvidenceStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def save(
        self,
        query: str,
        options: dict[str, Any],
        items: Iterable[dict[str, Any]],
        *,
        ttl_seconds: int | None = None,
        now_ms: int | None = None,
    ) -> str:
        now = _now_ms() if now_ms is None else now_ms
        pack_id = uuid.uuid4().hex
        expires_at = now + ttl_seconds * 1000 if ttl_seconds else None
        self.conn.execute(
            "INSERT INTO evidence_packs (id, query, options_json, created_at, expires_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (pack_id, query, json.dumps(options, sort_keys=True), now, expires_at),
        )
        rows = []
        for rank, item in enumerate(items):
            extra = {
                k: v for k, v in item.items() if k not in ("path", "line", "score", "preview")
            }
            rows.append(
                (
                    pack_id,
                    rank,
                    item["path"],
                    item.get("line"),
                    float(item.get("score", 0.0)),
                    item.get("preview"),
                    json.dumps(extra, default=str) if extra else None,
                )
            )
        if rows:
            self.conn.executemany(
                "INSERT INTO evidence_pack_items "
                "(pack_id, rank, path, line, score, preview, payload_json) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
        return pack_id

    def load(self, pack_id: str, *, now_ms: int | None = None) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT id, query, options_json, created_at, expires_at FROM evidence_packs "
            "WHERE id = ?",
            (pack_id,),
        ).fetchone()
        if not row:
            return None
        now = _now_ms() if now_ms is None else now_ms
        if row[4] is not None and row[4] <= now:
            return None
        items = []
        for r in self.conn.execute(
            "SELECT rank, path, line, score, preview, payload_json FROM evidence_pack_items "
            "WHERE pack_id = ? ORDER BY rank",
            (pack_id,),
        ).fetchall():
            item: dict[str, Any] = {"path": r[1], "line": r[2], "score": r[3], "preview": r[4]}
            if r[5]:
                item.update(json.loads(r[5]))
            items.append(item)
        return {
            "id": row[0],
            "query": row[1],
            "options": json.loads(row[2]) if row[2] else {},
            "created_at": row[3],
            "expires_at": row[4],
            "items": items,
        }

    def prune(self, *, now_ms: int | None = None) -> int:
        now = _now_ms() if now_ms is None else now_ms
        cur = self.conn.execute(
            "DELETE FROM evidence_packs WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (now,),
        )
        return cur.rowcount
