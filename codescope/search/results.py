# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Pure post-processing of ranked search results.

Stages always run in this order: file-type filter, content dedup, snippet
truncation, grouping by file.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional, Sequence

MIN_SNIPPET_LENGTH = 16
MAX_SNIPPET_LENGTH = 2000
ELLIPSIS = "…"


@dataclass
class SearchResult:
    path: str
    line: int
    preview: str
    score: float
    kind: str = "file"
    symbol: Optional[str] = None
    grouped_matches: list["SearchResult"] = field(default_factory=list)
    match_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "line": self.line,
            "preview": self.preview,
            "score": self.score,
            "kind": self.kind,
            "symbol": self.symbol,
            "match_count": self.match_count,
        }
        if self.grouped_matches:
            data["grouped_matches"] = [
                {k: v for k, v in m.to_dict().items() if k != "grouped_matches"}
                for m in self.grouped_matches
            ]
        return data


@dataclass(frozen=True)
class ResultOptions:
    file_types: Optional[Sequence[str]] = None
    deduplicate_by_content: bool = False
    group_by_file: bool = False
    snippet_length: Optional[int] = None


def normalize_extension(ext: str) -> str:
    """``"*.js"``, ``".js"`` and ``"JS"`` all become ``"js"``."""
    return ext.strip().lower().lstrip("*").lstrip(".")


def clamp_snippet_length(length: Optional[int]) -> Optional[int]:
    if length is None or length <= 0:
        return length
    return max(MIN_SNIPPET_LENGTH, min(MAX_SNIPPET_LENGTH, int(length)))


class ResultProcessor:
    def process(
        self, results: Iterable[SearchResult], options: ResultOptions | None = None
    ) -> list[SearchResult]:
        options = options or ResultOptions()
        out = list(results)
        if options.file_types:
            out = self.filter_by_type(out, options.file_types)
        if options.deduplicate_by_content:
            out = self.deduplicate(out)
        if options.snippet_length is not None:
            out = self.truncate(out, options.snippet_length)
        if options.group_by_file:
            out = self.group_by_file(out)
        return out

    @staticmethod
    def filter_by_type(results: Sequence[SearchResult], file_types: Iterable[str]) -> list[SearchResult]:
        wanted = {normalize_extension(t) for t in file_types}
        wanted.discard("")
        if not wanted:
            return list(results)
        return [r for r in results if any(r.path.lower().endswith("." + ext) for ext in wanted)]

    @staticmethod
    def deduplicate(results: Sequence[SearchResult]) -> list[SearchResult]:
        seen: set[str] = set()
        out = []
        for r in results:
            key = r.preview if r.preview else f"{r.path}:{r.line}"
            if key in seen:
                continue
            seen.add(key)
            out.append(r)
        return out

    @staticmethod
    def truncate(results: Sequence[SearchResult], snippet_length: int) -> list[SearchResult]:
        length = clamp_snippet_length(snippet_length)
        out = []
        for r in results:
            if length is None:
                out.append(r)
            elif length <= 0:
                out.append(replace(r, preview=""))
            elif len(r.preview) > length:
                out.append(replace(r, preview=r.preview[: length - 1] + ELLIPSIS))
            else:
                out.append(r)
        return out

    @staticmethod
    def group_by_file(results: Sequence[SearchResult]) -> list[SearchResult]:
        groups: dict[str, list[SearchResult]] = {}
        for r in results:
            groups.setdefault(r.path, []).append(r)
        out = []
        for members in groups.values():
            ordered = sorted(members, key=lambda m: -m.score)
            primary = ordered[0]
            out.append(
                replace(
                    primary,
                    score=primary.score,
                    grouped_matches=[replace(m, grouped_matches=[]) for m in ordered],
                    match_count=len(ordered),
                )
            )
        return out
