"""Parsed-file facts consumed by the index.

Parsing itself happens outside this package; a parser hands over one
:class:`ParsedFile` per source file and the index persists what it contains.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def normalize_path(path: str) -> str:
    """Forward slashes, no leading slash. Paths are stored relative to the project root."""
    return path.replace("\\", "/").lstrip("/")


@dataclass
class Symbol:
    """Represents a code symbol (function, class, variable, etc.)."""

    name: str
    kind: str
    file_path: str
    line: int
    end_line: int | None = None
    signature: str | None = None
    scope: str | None = None
    content: str = ""
    doc: str | None = None
    modifiers: tuple[str, ...] = ()

    @property
    def last_line(self) -> int:
        return self.end_line if self.end_line is not None else self.line

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "file_path": self.file_path,
            "line": self.line,
            "end_line": self.end_line,
            "signature": self.signature,
            "scope": self.scope,
            "doc": self.doc,
            "modifiers": list(self.modifiers),
        }


@dataclass
class Dependency:
    """A resolved edge from one indexed file to another."""

    source: str
    target: str
    kind: str = "import"
    weight: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class UnresolvedImport:
    """An import specifier the parser could not map to a file."""

    source: str
    specifier: str
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedFile:
    """Everything a parser knows about one file."""

    path: str
    content: str
    language: str | None = None
    last_modified: float | None = None
    symbols: list[Symbol] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    unresolved: list[UnresolvedImport] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.path = normalize_path(self.path)
