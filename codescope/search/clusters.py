# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Seed + context clustering of ranked candidates."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from ..analysis import Symbol, count_tokens

COLOCATED_BONUS = 0.05
SIBLING_BONUS = 0.03
TOKEN_PENALTY_DIVISOR = 5000.0

RELATION_COLOCATED = "colocated"
RELATION_SIBLING = "sibling"
RELATION_DEPENDENCY = "dependency"


@dataclass
class SearchCandidate:
    path: str
    score: float
    line: int = 1
    preview: str = ""
    symbol: Symbol | None = None
    sources: frozenset[str] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "score": self.score,
            "line": self.line,
            "preview": self.preview,
            "symbol": self.symbol.to_dict() if self.symbol else None,
            "sources": sorted(self.sources),
        }


@dataclass
class ClusterMember:
    path: str
    name: str
    kind: str
    line: int
    relation: str
    signature: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "kind": self.kind,
            "line": self.line,
            "relation": self.relation,
            "signature": self.signature,
        }


@dataclass
class SearchCluster:
    seeds: list[SearchCandidate]
    colocated: list[ClusterMember] = field(default_factory=list)
    siblings: list[ClusterMember] = field(default_factory=list)
    estimated_tokens: int = 0
    score: float = 0.0

    @property
    def path(self) -> str:
        return self.seeds[0].path

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "score": self.score,
            "estimated_tokens": self.estimated_tokens,
            "seeds": [s.to_dict() for s in self.seeds],
            "colocated": [m.to_dict() for m in self.colocated],
            "siblings": [m.to_dict() for m in self.siblings],
        }


def _member(symbol: Symbol, relation: str) -> ClusterMember:
    return ClusterMember(
        path=symbol.file_path,
        name=symbol.name,
        kind=symbol.kind,
        line=symbol.line,
        relation=relation,
        signature=symbol.signature,
    )


def _matches(name: str, lowered_terms: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(term in lowered for term in lowered_terms)


class ClusterBuilder:
    """Builds one cluster per candidate: a seed plus bounded supporting context."""

    def __init__(
        self,
        store=None,
        *,
        max_colocated: int = 10,
        max_siblings: int = 6,
        line_window: int = 40,
        token_model: str | None = None,
    ):
        self.store = store
        self.max_colocated = max_colocated
        self.max_siblings = max_siblings
        self.line_window = line_window
        self.token_model = token_model

    @staticmethod
    def pick_seed(
        symbols: Sequence[Symbol], terms: Sequence[str], line: int | None = None
    ) -> Symbol | None:
        if not symbols:
            return None
        lowered = [t.lower() for t in terms if t]
        for sym in symbols:
            if sym.name.lower() in lowered:
                return sym
        for sym in symbols:
            if lowered and _matches(sym.name, lowered):
                return sym
        if line is not None:
            for sym in symbols:
                if sym.line <= line <= sym.last_line:
                    return sym
        return symbols[0]

    def build(
        self,
        candidate: SearchCandidate,
        terms: Sequence[str],
        symbols: Sequence[Symbol] = (),
        *,
        candidate_paths: Iterable[str] = (),
        scope: str | None = None,
    ) -> SearchCluster:
        lowered = [t.lower() for t in terms if t]
        seed_symbol = candidate.symbol or self.pick_seed(symbols, terms, candidate.line)
        seed = candidate
        if seed_symbol is not None and candidate.symbol is None:
            seed = SearchCandidate(
                path=candidate.path,
                score=candidate.score,
                line=seed_symbol.line,
                preview=candidate.preview,
                symbol=seed_symbol,
                sources=candidate.sources,
            )

        colocated: list[ClusterMember] = []
        siblings: list[ClusterMember] = []
        if seed_symbol is not None:
            others = [s for s in symbols if s != seed_symbol]
            same_container = [
                s
                for s in others
                if s.scope and (s.scope == seed_symbol.scope or s.scope == seed_symbol.name)
            ]
            container_ids = {id(s) for s in same_container}
            near = [
                s
                for s in others
                if id(s) not in container_ids
                and (
                    abs(s.line - seed_symbol.line) <= self.line_window
                    or (lowered and _matches(s.name, lowered))
                )
            ]
            near.sort(
                key=lambda s: (
                    0 if lowered and _matches(s.name, lowered) else 1,
                    abs(s.line - seed_symbol.line),
                )
            )
            colocated = [_member(s, RELATION_COLOCATED) for s in near[: self.max_colocated]]
            siblings = [_member(s, RELATION_SIBLING) for s in same_container[: self.max_siblings]]

        if scope != "local" and self.store is not None and len(siblings) < self.max_siblings:
            wanted = set(candidate_paths)
            wanted.discard(candidate.path)
            neighbours: list[str] = []
            for dep in self.store.get_dependencies(candidate.path, "outgoing"):
                neighbours.append(dep.target)
            for dep in self.store.get_dependencies(candidate.path, "incoming"):
                neighbours.append(dep.source)
            for path in dict.fromkeys(neighbours):
                if path not in wanted:
                    continue
                siblings.append(
                    ClusterMember(
                        path=path, name=path, kind="file", line=1, relation=RELATION_DEPENDENCY
                    )
                )
                if len(siblings) >= self.max_siblings:
                    break

        seed_text = (seed_symbol.content if seed_symbol and seed_symbol.content else "") or (
            seed.preview
        )
        estimated = count_tokens(seed_text, self.token_model)
        for member in colocated + siblings:
            estimated += count_tokens(member.signature or member.name, self.token_model)

        return SearchCluster(
            seeds=[seed], colocated=colocated, siblings=siblings, estimated_tokens=estimated
        )


class ClusterRanker:
    @staticmethod
    def score(cluster: SearchCluster) -> float:
        best_seed = max((s.score for s in cluster.seeds), default=0.0)
        return (
            best_seed
            + COLOCATED_BONUS * len(cluster.colocated)
            + SIBLING_BONUS * len(cluster.siblings)
            - cluster.estimated_tokens / TOKEN_PENALTY_DIVISOR
        )

    def rank(self, clusters: Iterable[SearchCluster]) -> list[SearchCluster]:
        ranked = list(clusters)
        for cluster in ranked:
            cluster.score = self.score(cluster)
        ranked.sort(key=lambda c: -c.score)
        return ranked
