# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Character-trigram inverted index with rocksdict persistence.

Postings live in memory as ``gram -> {path: count}``; a
:class:`TrigramPostingStore` writes them to a RocksDB directory so the index
survives restarts without re-reading every file.
"""

from __future__ import annotations

import json
import logging
import math
import time
import zlib
from collections import Counter
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterator

from ..analysis.text import normalize

logger = logging.getLogger(__name__)

try:
    from rocksdict import Rdict  # type: ignore
    ROCKSDICT_AVAILABLE = True
except Exception:
    Rdict: Any = None
    ROCKSDICT_AVAILABLE = False

# Strength of the document-length penalty applied after IDF scoring
LENGTH_PENALTY = 0.15

_GRAM_PREFIX = b"g:"
_STATS_PREFIX = b"s:"


@dataclass(frozen=True)
class TrigramStats:
    word_count: int
    unique_trigrams: int
    total_trigrams: int


def extract_trigram_counts(text: str) -> Counter[str]:
    """Count the trigrams of normalized text.

    Shingles starting or ending on a space are skipped; text shorter than
    three characters is its own key.
    """
    norm = normalize(text)
    if not norm:
        return Counter()
    if len(norm) < 3:
        return Counter({norm: 1})
    counts: Counter[str] = Counter()
    for i in range(len(norm) - 2):
        gram = norm[i : i + 3]
        if gram[0] == " " or gram[2] == " ":
            continue
        counts[gram] += 1
    return counts


def compute_stats(text: str, counts: Counter[str] | None = None) -> TrigramStats:
    if counts is None:
        counts = extract_trigram_counts(text)
    return TrigramStats(
        word_count=len(normalize(text).split()),
        unique_trigrams=len(counts),
        total_trigrams=sum(counts.values()),
    )


def _idf(n_docs: int, df: int) -> float:
    return math.log((n_docs - df + 0.5) / (df + 0.5) + 1.0)


class TrigramPostingStore:
    """RocksDB-backed persistence for trigram postings and per-file stats."""

    def __init__(self, path: Path, *, write_retries: int = 3, retry_backoff_ms: int = 50):
        if not ROCKSDICT_AVAILABLE:
            raise RuntimeError("No RocksDB backend available. Install rocksdict")
        path.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.write_retries = max(1, write_retries)
        self.retry_backoff_ms = retry_backoff_ms
        try:
            self._rd = Rdict(str(path))
        except Exception:
            logger.exception("Failed to initialize rocksdict trigram store at %s", path)
            raise

    @staticmethod
    def _serialize_postings(postings: dict[str, int]) -> bytes:
        return zlib.compress(
            json.dumps(postings, ensure_ascii=False, sort_keys=True).encode("utf-8")
        )

    @staticmethod
    def _deserialize_postings(blob: bytes) -> dict[str, int]:
        try:
            parsed = json.loads(zlib.decompress(blob).decode("utf-8"))
            if isinstance(parsed, dict):
                return {str(k): int(v) for k, v in parsed.items()}
        except Exception:
            logger.debug("Failed to deserialize trigram postings", exc_info=True)
        return {}

    @staticmethod
    def serialize_stats(stats: TrigramStats) -> bytes:
        return zlib.compress(json.dumps(asdict(stats)).encode("utf-8"))

    @staticmethod
    def deserialize_stats(blob: bytes) -> TrigramStats | None:
        try:
            return TrigramStats(**json.loads(zlib.decompress(blob).decode("utf-8")))
        except Exception:
            logger.debug("Failed to deserialize trigram stats", exc_info=True)
            return None

    def _write(self, key: bytes, value: bytes) -> None:
        last_exc = None
        for attempt in range(1, self.write_retries + 1):
            try:
                self._rd[key] = value
                return
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "rocksdict write attempt %d/%d failed for %r", attempt, self.write_retries, key
                )
                if attempt < self.write_retries:
                    time.sleep(self.retry_backoff_ms / 1000.0)
        logger.error("Failed to write %r after %d attempts", key, self.write_retries)
        raise last_exc  # type: ignore[misc]

    def _delete(self, key: bytes) -> None:
        try:
            del self._rd[key]
        except KeyError:
            pass

    def put_postings(self, gram: str, postings: dict[str, int]) -> None:
        key = _GRAM_PREFIX + gram.encode("utf-8")
        if not postings:
            self._delete(key)
            return
        self._write(key, self._serialize_postings(postings))

    def put_stats(self, path: str, stats: TrigramStats | None) -> None:
        key = _STATS_PREFIX + path.encode("utf-8")
        if stats is None:
            self._delete(key)
            return
        self._write(key, self.serialize_stats(stats))

    def iter_items(self) -> Iterator[tuple[str, str, Any]]:
        """Yield ``("gram", gram, postings)`` and ``("stats", path, stats)`` entries."""
        for k, v in self._rd.items():
            key = bytes(k) if isinstance(k, (bytes, bytearray)) else str(k).encode("utf-8")
            if key.startswith(_GRAM_PREFIX):
                yield "gram", key[len(_GRAM_PREFIX):].decode("utf-8"), self._deserialize_postings(v)
            elif key.startswith(_STATS_PREFIX):
                stats = self.deserialize_stats(v)
                if stats is not None:
                    yield "stats", key[len(_STATS_PREFIX):].decode("utf-8"), stats

    def commit(self) -> None:
        try:
            if hasattr(self._rd, "flush_wal"):
                self._rd.flush_wal()
            if hasattr(self._rd, "flush"):
                self._rd.flush()
        except Exception:
            logger.debug("rocksdict flush failed", exc_info=True)

    def close(self) -> None:
        try:
            self._rd.close()
        except Exception:
            logger.debug("Error closing rocksdict", exc_info=True)


class TrigramIndex:
    """In-memory trigram postings with IDF-weighted overlap scoring."""

    def __init__(self, store: TrigramPostingStore | None = None):
        self.store = store
        self._postings: dict[str, dict[str, int]] = {}
        self._file_grams: dict[str, Counter[str]] = {}
        self._stats: dict[str, TrigramStats] = {}
        self._dirty_grams: set[str] = set()
        self._dirty_files: set[str] = set()

    def __len__(self) -> int:
        return len(self._file_grams)

    @property
    def gram_count(self) -> int:
        return len(self._postings)

    def has_file(self, path: str) -> bool:
        return path in self._file_grams

    def list_files(self) -> list[str]:
        return sorted(self._file_grams)

    def stats(self, path: str) -> TrigramStats | None:
        return self._stats.get(path)

    def add_file(self, path: str, text: str) -> TrigramStats:
        """Index (or re-index) a file, replacing any previous postings for it."""
        self.remove_file(path)
        counts = extract_trigram_counts(text)
        for gram, count in counts.items():
            self._postings.setdefault(gram, {})[path] = count
            self._dirty_grams.add(gram)
        stats = compute_stats(text, counts)
        self._file_grams[path] = counts
        self._stats[path] = stats
        self._dirty_files.add(path)
        return stats

    def remove_file(self, path: str) -> bool:
        counts = self._file_grams.pop(path, None)
        if counts is None:
            return False
        for gram in counts:
            posting = self._postings.get(gram)
            if posting is None:
                continue
            posting.pop(path, None)
            if not posting:
                del self._postings[gram]
            self._dirty_grams.add(gram)
        self._stats.pop(path, None)
        self._dirty_files.add(path)
        return True

    def _average_total(self) -> float:
        if not self._stats:
            return 0.0
        return sum(s.total_trigrams for s in self._stats.values()) / len(self._stats)

    def _length_factor(self, path: str, avg_total: float) -> float:
        stats = self._stats.get(path)
        if stats is None or avg_total <= 0:
            return 1.0
        return 1.0 / (1.0 + LENGTH_PENALTY * math.log1p(stats.total_trigrams / avg_total))

    def search(self, term: str, limit: int = 200) -> list[tuple[str, float]]:
        """Rank files by how many of the term's trigrams they share."""
        norm = normalize(term)
        if not norm or not self._file_grams:
            return []
        avg_total = self._average_total()
        scores: dict[str, float] = {}

        if len(norm) < 3:
            for gram, posting in self._postings.items():
                if norm not in gram:
                    continue
                for path, count in posting.items():
                    scores[path] = scores.get(path, 0.0) + count
            if scores:
                top = max(scores.values())
                scores = {p: s / top for p, s in scores.items()}
        else:
            query = extract_trigram_counts(norm)
            n_docs = len(self._file_grams)
            total_weight = 0.0
            for gram, q_count in query.items():
                posting = self._postings.get(gram, {})
                idf = _idf(n_docs, len(posting))
                total_weight += q_count * idf
                for path, freq in posting.items():
                    scores[path] = scores.get(path, 0.0) + min(freq, q_count) * idf
            if total_weight <= 0:
                return []
            scores = {p: s / total_weight for p, s in scores.items()}

        ranked = sorted(
            ((p, s * self._length_factor(p, avg_total)) for p, s in scores.items()),
            key=lambda item: (-item[1], item[0]),
        )
        return ranked[:limit]

    def save(self) -> int:
        """Write changed postings and stats to the backing store; returns keys written."""
        if self.store is None:
            return 0
        written = 0
        for gram in sorted(self._dirty_grams):
            self.store.put_postings(gram, self._postings.get(gram, {}))
            written += 1
        for path in sorted(self._dirty_files):
            self.store.put_stats(path, self._stats.get(path))
            written += 1
        self.store.commit()
        self._dirty_grams.clear()
        self._dirty_files.clear()
        return written

    def load(self) -> int:
        """Replace in-memory state with the backing store's contents; returns file count."""
        if self.store is None:
            return 0
        self._postings.clear()
        self._file_grams.clear()
        self._stats.clear()
        for kind, key, value in self.store.iter_items():
            if kind == "gram":
                if not value:
                    continue
                self._postings[key] = dict(value)
                for path, count in value.items():
                    self._file_grams.setdefault(path, Counter())[key] = count
            else:
                self._stats[key] = value
        for path in self._stats:
            self._file_grams.setdefault(path, Counter())
        self._dirty_grams.clear()
        self._dirty_files.clear()
        logger.info(
            "Loaded trigram index from %s (%d files, %d grams)",
            self.store.path,
            len(self._file_grams),
            len(self._postings),
        )
        return len(self._file_grams)

    def close(self) -> None:
        if self.store is not None:
            self.store.close()
