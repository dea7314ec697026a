# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Candidate file collection for lexical search.

The collector over-approximates on purpose: it unions trigram hits,
filename matches and symbol-name matches, and tops the set up with the file
catalog when it is sparse. Ranking prunes the false positives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from ..storage.trigram import TrigramIndex

logger = logging.getLogger(__name__)

SOURCE_TRIGRAM = "trigram"
SOURCE_FILENAME = "filename"
SOURCE_SYMBOL = "symbol"
SOURCE_FALLBACK = "fallback"


@dataclass
class CandidateSet:
    paths: list[str] = field(default_factory=list)
    sources: dict[str, set[str]] = field(default_factory=dict)
    trigram_scores: dict[str, float] = field(default_factory=dict)
    fallback_used: bool = False

    def add(self, path: str, source: str) -> None:
        if path not in self.sources:
            self.paths.append(path)
            self.sources[path] = set()
        self.sources[path].add(source)

    def __contains__(self, path: object) -> bool:
        return path in self.sources

    def __len__(self) -> int:
        return len(self.paths)

    def __iter__(self) -> Iterator[str]:
        return iter(self.paths)


class CandidateCollector:
    def __init__(
        self,
        trigram_index: TrigramIndex,
        store=None,
        *,
        min_candidates: int = 20,
        fallback_limit: int = 1200,
        trigram_limit: int = 800,
    ):
        self.trigram_index = trigram_index
        self.store = store
        self.min_candidates = min_candidates
        self.fallback_limit = fallback_limit
        self.trigram_limit = trigram_limit

    def _by_filename(self, lowered_terms: list[str]) -> list[str]:
        matches = []
        for path in self.trigram_index.list_files():
            lowered_path = path.lower()
            if any(term in lowered_path for term in lowered_terms):
                matches.append(path)
        return matches

    def _by_symbol(self, lowered_terms: list[str]) -> list[str]:
        if self.store is None:
            return []
        matches: dict[str, None] = {}
        for path, name in self.store.symbol_names():
            if path in matches:
                continue
            lowered_name = name.lower()
            if any(term in lowered_name for term in lowered_terms):
                matches[path] = None
        return sorted(matches)

    def collect(self, terms: Sequence[str]) -> CandidateSet:
        candidates = CandidateSet()
        lowered_terms = [t.lower() for t in terms if t and t.strip()]

        # Exact filename/symbol hits go in first so nothing can crowd them out
        if lowered_terms:
            for path in self._by_filename(lowered_terms):
                candidates.add(path, SOURCE_FILENAME)
            for path in self._by_symbol(lowered_terms):
                candidates.add(path, SOURCE_SYMBOL)

            trigram_query = " ".join(terms)
            for path, score in self.trigram_index.search(trigram_query, self.trigram_limit):
                candidates.add(path, SOURCE_TRIGRAM)
                candidates.trigram_scores[path] = score

        if len(candidates) < self.min_candidates:
            fallback = self.trigram_index.list_files()[: self.fallback_limit]
            for path in fallback:
                candidates.add(path, SOURCE_FALLBACK)
            candidates.fallback_used = True

        logger.debug(
            "collect: terms=%s candidates=%d fallback=%s",
            list(terms),
            len(candidates),
            candidates.fallback_used,
        )
        return candidates
