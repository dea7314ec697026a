# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Vector indexes over chunk embeddings.

``BruteForceVectorIndex`` keeps an in-memory ``id -> vector`` map and scans it
with cosine similarity; its ``save``/``load`` hooks do nothing. The LanceDB
variant scores the same way but persists its vectors to a LanceDB table.
``VectorIndexManager`` owns one index per provider/model pair and rebuilds
it from the store as a full snapshot.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Any, Optional, Sequence, cast

import numpy as np

from ..config import VectorIndexSettings

logger = logging.getLogger(__name__)

try:
    import lancedb  # type: ignore
    LANCEDB_AVAILABLE = True
except Exception:
    lancedb: Any = None
    LANCEDB_AVAILABLE = False


@dataclass(frozen=True)
class VectorHit:
    id: str
    score: float


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    va = np.asarray(a, dtype=np.float32).reshape(-1)
    vb = np.asarray(b, dtype=np.float32).reshape(-1)
    if va.shape != vb.shape:
        return 0.0
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


class VectorIndex:
    """Interface shared by every vector index backend."""

    backend = "abstract"

    def __init__(self, dims: int):
        self.dims = int(dims)

    def __len__(self) -> int:
        raise NotImplementedError

    def upsert(self, item_id: str, vector: Sequence[float] | np.ndarray) -> bool:
        raise NotImplementedError

    def remove(self, item_id: str) -> bool:
        raise NotImplementedError

    def search(self, query: Sequence[float] | np.ndarray | None, k: int = 10) -> list[VectorHit]:
        raise NotImplementedError

    def save(self) -> None:
        raise NotImplementedError

    def load(self) -> None:
        raise NotImplementedError


class BruteForceVectorIndex(VectorIndex):
    backend = "bruteforce"

    def __init__(self, dims: int):
        super().__init__(dims)
        self._vectors: dict[str, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._vectors)

    def ids(self) -> list[str]:
        return list(self._vectors)

    def _coerce(self, vector: Sequence[float] | np.ndarray | None) -> np.ndarray | None:
        if vector is None:
            return None
        try:
            arr = np.asarray(vector, dtype=np.float32).reshape(-1)
        except (TypeError, ValueError):
            return None
        if arr.shape[0] != self.dims or self.dims == 0:
            return None
        return arr

    def upsert(self, item_id: str, vector: Sequence[float] | np.ndarray) -> bool:
        """Insert or replace a vector; empty ids and wrong dimensions are ignored."""
        if not item_id:
            return False
        arr = self._coerce(vector)
        if arr is None:
            logger.debug("Ignoring vector for %s with mismatched dimensions", item_id)
            return False
        self._vectors[item_id] = arr
        return True

    def remove(self, item_id: str) -> bool:
        return self._vectors.pop(item_id, None) is not None

    def clear(self) -> None:
        self._vectors.clear()

    def search(self, query: Sequence[float] | np.ndarray | None, k: int = 10) -> list[VectorHit]:
        q = self._coerce(query)
        if q is None or not self._vectors or k <= 0:
            return []
        ids = list(self._vectors)
        matrix = np.stack([self._vectors[i] for i in ids])
        norms = np.linalg.norm(matrix, axis=1)
        q_norm = float(np.linalg.norm(q))
        if q_norm == 0.0:
            scores = np.zeros(len(ids), dtype=np.float32)
        else:
            with np.errstate(divide="ignore", invalid="ignore"):
                scores = (matrix @ q) / (norms * q_norm)
            scores = np.where(norms == 0.0, 0.0, scores)
        # stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:k]
        return [VectorHit(id=ids[i], score=float(scores[i])) for i in order]

    def save(self) -> None:
        return None

    def load(self) -> None:
        return None


def _table_name(provider: str, model: str) -> str:
    return "vectors_" + re.sub(r"[^A-Za-z0-9]+", "_", f"{provider}_{model}").strip("_").lower()


class LanceVectorIndex(BruteForceVectorIndex):
    """Brute-force scoring with vectors persisted to a LanceDB table."""

    backend = "lancedb"

    def __init__(self, dims: int, base_path: Path, table_name: str):
        if not LANCEDB_AVAILABLE:
            raise RuntimeError(
                "LanceDB is not installed. Install with `pip install .[lancedb]` "
                "or use the bruteforce vector backend."
            )
        super().__init__(dims)
        self.base_path = base_path
        self.table_name = table_name
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._db: Any = cast(Any, lancedb).connect(str(self.base_path))

    def save(self) -> None:
        records = [{"id": i, "vector": v.tolist()} for i, v in self._vectors.items()]
        if not records:
            if self.table_name in set(self._db.table_names()):
                self._db.drop_table(self.table_name)
            return
        self._db.create_table(self.table_name, data=records, mode="overwrite")
        logger.info("Saved %d vectors to LanceDB table %s", len(records), self.table_name)

    def load(self) -> None:
        if self.table_name not in set(self._db.table_names()):
            return
        rows = self._db.open_table(self.table_name).to_arrow().to_pylist()
        self._vectors.clear()
        for row in rows:
            self.upsert(str(row.get("id") or ""), row.get("vector") or [])
        logger.info("Loaded %d vectors from LanceDB table %s", len(self), self.table_name)


class VectorIndexManager:
    """Owns one vector index per (provider, model) and rebuilds it from the store."""

    def __init__(self, store: Any, settings: Optional[VectorIndexSettings] = None):
        self.store = store
        self.settings = settings or VectorIndexSettings()
        self._indexes: dict[tuple[str, str], VectorIndex] = {}
        # Pairs whose last rebuild found no embeddings; searched as empty until
        # new embeddings arrive.
        self._empty: set[tuple[str, str]] = set()

    def _new_index(self, provider: str, model: str, dims: int) -> VectorIndex:
        if self.settings.backend == "lancedb":
            base_path = self.settings.path or Path("lancedb")
            return LanceVectorIndex(dims, base_path, _table_name(provider, model))
        return BruteForceVectorIndex(dims)

    def get(self, provider: str, model: str) -> VectorIndex | None:
        return self._indexes.get((provider, model))

    def rebuild(self, provider: str, model: str) -> dict[str, Any]:
        """Build a fresh index from every stored embedding for the pair, then swap it in."""
        start = perf_counter()
        index: VectorIndex | None = None
        loaded = 0
        skipped = 0
        for record in self.store.iter_embeddings(provider, model):
            if index is None:
                index = self._new_index(provider, model, record.dims)
            if index.upsert(record.chunk_id, record.vector):
                loaded += 1
            else:
                skipped += 1

        key = (provider, model)
        if index is None:
            self._indexes.pop(key, None)
            self._empty.add(key)
        else:
            self._indexes[key] = index
            self._empty.discard(key)
            index.save()
        duration = perf_counter() - start
        if skipped:
            logger.warning(
                "Vector rebuild %s/%s skipped %d records with mismatched dimensions",
                provider,
                model,
                skipped,
            )
        logger.info(
            "Rebuilt vector index provider=%s model=%s vectors=%d duration=%.3fs",
            provider,
            model,
            loaded,
            duration,
        )
        return {
            "provider": provider,
            "model": model,
            "backend": self.settings.backend,
            "dims": index.dims if index is not None else 0,
            "vectors": loaded,
            "skipped": skipped,
            "duration_s": round(duration, 4),
        }

    def _ensure(self, provider: str, model: str) -> VectorIndex | None:
        key = (provider, model)
        index = self._indexes.get(key)
        if index is None and key not in self._empty:
            self.rebuild(provider, model)
            index = self._indexes.get(key)
        return index

    def search(
        self,
        query: Sequence[float] | np.ndarray | None,
        provider: str,
        model: str,
        k: int = 10,
    ) -> list[VectorHit]:
        index = self._ensure(provider, model)
        if index is None:
            return []
        return index.search(query, k)

    def upsert(self, provider: str, model: str, chunk_id: str, vector: Sequence[float]) -> bool:
        """Add to an already-loaded index; unloaded pairs pick the record up on rebuild."""
        key = (provider, model)
        index = self._indexes.get(key)
        if index is None:
            self._empty.discard(key)
            return False
        return index.upsert(chunk_id, vector)

    def remove_chunks(self, chunk_ids: Sequence[str]) -> int:
        removed = 0
        for index in self._indexes.values():
            for chunk_id in chunk_ids:
                if index.remove(chunk_id):
                    removed += 1
        return removed

    def drop(self, provider: str, model: str) -> bool:
        self._empty.discard((provider, model))
        return self._indexes.pop((provider, model), None) is not None

    def stats(self) -> list[dict[str, Any]]:
        return [
            {"provider": p, "model": m, "backend": idx.backend, "dims": idx.dims, "vectors": len(idx)}
            for (p, m), idx in sorted(self._indexes.items())
        ]
