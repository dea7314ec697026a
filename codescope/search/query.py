# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Query understanding: tokenizing, prefix parsing and intent detection."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from ..analysis.text import normalize

_TOKEN_RE = re.compile(r'"([^"]+)"|(\S+)')

INTENT_ANY = "any"
INTENT_USAGE = "usage"

SCOPES = ("local", "project")

# Ordered: the first category whose keywords appear in the query wins.
INTENT_PRIORITY: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("symbol", ("class", "interface", "function", "const", "enum", "type")),
    ("file", ("file", "config", "json", "yaml", "xml", "md")),
    ("bug", ("error", "bug", "check", "fix", "issue", "fail")),
)
DEFAULT_CATEGORY = "code"

_TYPE_PREFIXES = {
    "function:": ("function", "method"),
    "class:": ("class",),
}


@dataclass
class QueryFilters:
    types: list[str] = field(default_factory=list)
    file: Optional[str] = None
    scope: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.types and self.file is None and self.scope is None

    def to_dict(self) -> dict:
        return {"types": list(self.types), "file": self.file, "scope": self.scope}


@dataclass
class ParsedQuery:
    raw: str
    terms: list[str] = field(default_factory=list)
    filters: QueryFilters = field(default_factory=QueryFilters)
    intent: str = INTENT_ANY

    @property
    def normalized_terms(self) -> list[str]:
        return [t for t in (normalize(term) for term in self.terms) if t]

    def to_dict(self) -> dict:
        return {
            "raw": self.raw,
            "terms": list(self.terms),
            "filters": self.filters.to_dict(),
            "intent": self.intent,
        }


class QueryTokenizer:
    """Whitespace tokenizer that keeps double-quoted spans together."""

    def tokenize(self, query: str) -> list[str]:
        tokens = []
        for match in _TOKEN_RE.finditer(query or ""):
            phrase, word = match.groups()
            tokens.append(phrase if phrase is not None else word)
        return tokens


class QueryParser:
    """Recognize ``function:``, ``class:``, ``in:``, ``scope:`` and ``usages:`` prefixes."""

    def __init__(self, tokenizer: QueryTokenizer | None = None):
        self.tokenizer = tokenizer or QueryTokenizer()

    def parse(self, query: str) -> ParsedQuery:
        parsed = ParsedQuery(raw=query or "")
        for token in self.tokenizer.tokenize(query):
            lowered = token.lower()

            prefix = next((p for p in _TYPE_PREFIXES if lowered.startswith(p)), None)
            if prefix is not None:
                for kind in _TYPE_PREFIXES[prefix]:
                    if kind not in parsed.filters.types:
                        parsed.filters.types.append(kind)
                rest = token[len(prefix):]
                if rest:
                    parsed.terms.append(rest)
                continue

            if lowered.startswith("in:"):
                rest = token[3:]
                if rest:
                    parsed.filters.file = rest
                continue

            if lowered.startswith("scope:"):
                value = token[6:].lower()
                if value in SCOPES:
                    parsed.filters.scope = value
                continue

            if lowered.startswith("usages:"):
                parsed.intent = INTENT_USAGE
                rest = token[7:]
                if rest:
                    parsed.terms.append(rest)
                continue

            parsed.terms.append(token)
        return parsed


class QueryIntentDetector:
    """Map a query to symbol / file / bug / code with an explicit priority table."""

    def __init__(self, priority: tuple[tuple[str, tuple[str, ...]], ...] = INTENT_PRIORITY):
        self.priority = priority

    def detect(self, query: str) -> str:
        lowered = (query or "").lower()
        for category, keywords in self.priority:
            if any(keyword in lowered for keyword in keywords):
                return category
        return DEFAULT_CATEGORY
