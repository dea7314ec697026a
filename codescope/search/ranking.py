# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Multi-field BM25 (BM25F) scoring.

Per-field term frequencies are length-normalized field by field, weighted,
and summed into one pseudo-frequency before the usual saturation and IDF
terms are applied. Tokens come from :func:`identifier_tokens`, so any
Unicode letters count as words and camelCase identifiers also match on
their parts.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from ..analysis.text import identifier_tokens

FIELD_SYMBOL = "symbol"
FIELD_SIGNATURE = "signature"
FIELD_EXPORT = "export"
FIELD_PATH = "path"
FIELD_COMMENT = "comment"
FIELD_BODY = "body"

DEFAULT_FIELD_WEIGHTS: dict[str, float] = {
    FIELD_SYMBOL: 10.0,
    FIELD_SIGNATURE: 6.0,
    FIELD_EXPORT: 3.0,
    FIELD_PATH: 4.0,
    FIELD_COMMENT: 0.5,
    FIELD_BODY: 1.0,
}

# Extra multipliers applied on top of the defaults per query category
INTENT_FIELD_BOOSTS: dict[str, dict[str, float]] = {
    "symbol": {FIELD_SYMBOL: 1.5, FIELD_SIGNATURE: 1.5},
    "file": {FIELD_PATH: 2.5},
    "bug": {FIELD_BODY: 1.5, FIELD_COMMENT: 2.0},
}


def weights_for_intent(category: str, base: Mapping[str, float] | None = None) -> dict[str, float]:
    weights = dict(base or DEFAULT_FIELD_WEIGHTS)
    for name, factor in INTENT_FIELD_BOOSTS.get(category, {}).items():
        if name in weights:
            weights[name] *= factor
    return weights


@dataclass
class FieldDocument:
    id: str
    fields: dict[str, str] = field(default_factory=dict)


class BM25FRanking:
    def __init__(
        self,
        k1: float = 1.2,
        b: float = 0.75,
        field_weights: Mapping[str, float] | None = None,
        field_b: Mapping[str, float] | None = None,
    ):
        self.k1 = k1
        self.b = b
        self.field_weights = dict(field_weights or DEFAULT_FIELD_WEIGHTS)
        self.field_b = dict(field_b or {})

    @staticmethod
    def query_tokens(terms: Sequence[str] | str) -> list[str]:
        if isinstance(terms, str):
            terms = [terms]
        return list(dict.fromkeys(tok for term in terms for tok in identifier_tokens(term)))

    def rank(
        self,
        documents: Sequence[FieldDocument],
        terms: Sequence[str] | str,
        field_weights: Mapping[str, float] | None = None,
    ) -> list[tuple[str, float]]:
        """Score every document; results are sorted by score, ties keep input order."""
        weights = dict(field_weights) if field_weights is not None else self.field_weights
        query = self.query_tokens(terms)
        if not documents:
            return []
        if not query:
            return [(doc.id, 0.0) for doc in documents]

        field_counts: list[dict[str, Counter[str]]] = []
        field_lengths: dict[str, float] = {}
        doc_freq: Counter[str] = Counter()
        query_set = set(query)

        for doc in documents:
            per_field: dict[str, Counter[str]] = {}
            seen: set[str] = set()
            for name, text in doc.fields.items():
                if name not in weights or not text:
                    continue
                counts = Counter(identifier_tokens(text))
                per_field[name] = counts
                field_lengths[name] = field_lengths.get(name, 0.0) + sum(counts.values())
                seen.update(query_set.intersection(counts))
            field_counts.append(per_field)
            doc_freq.update(seen)

        n_docs = len(documents)
        avg_len = {name: total / n_docs for name, total in field_lengths.items()}
        idf = {
            tok: math.log((n_docs - doc_freq[tok] + 0.5) / (doc_freq[tok] + 0.5) + 1.0)
            for tok in query
        }

        scored = []
        for position, (doc, per_field) in enumerate(zip(documents, field_counts)):
            score = 0.0
            for tok in query:
                if not doc_freq[tok]:
                    continue
                pseudo_tf = 0.0
                for name, counts in per_field.items():
                    tf = counts.get(tok, 0)
                    if not tf:
                        continue
                    b = self.field_b.get(name, self.b)
                    avg = avg_len.get(name, 0.0)
                    length = sum(counts.values())
                    norm = (1.0 - b + b * length / avg) if avg > 0 else 1.0
                    pseudo_tf += weights[name] * tf / norm
                if pseudo_tf > 0:
                    score += idf[tok] * pseudo_tf * (self.k1 + 1.0) / (self.k1 + pseudo_tf)
            scored.append((position, doc.id, score))

        scored.sort(key=lambda item: (-item[2], item[0]))
        return [(doc_id, score) for _, doc_id, score in scored]
