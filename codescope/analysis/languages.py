"""Language and file classification helpers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath

EXT_LANGUAGE_MAP = {
    ".py": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".java": "java",
    ".kt": "kotlin",
    ".go": "go",
    ".cs": "csharp",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".swift": "swift",
    ".rb": "ruby",
    ".php": "php",
    ".sql": "sql",
    ".sh": "shell",
    ".bash": "shell",
    ".md": "markdown",
    ".mdx": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".xml": "xml",
}

DOC_LIKE_EXTS = {".md", ".mdx", ".rst", ".adoc", ".txt"}
CONFIG_LIKE_EXTS = {".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf", ".xml"}


@dataclass(frozen=True)
class PathClass:
    extension: str | None
    language: str
    is_code: bool
    is_doc: bool
    is_config: bool


def detect_language(path: str) -> str:
    return EXT_LANGUAGE_MAP.get(PurePosixPath(path).suffix.lower(), "unknown")


def classify_path(path: str) -> PathClass:
    """Heuristic classification used to bias file-intent queries."""
    ext = PurePosixPath(path).suffix.lower()
    is_doc = ext in DOC_LIKE_EXTS
    is_config = ext in CONFIG_LIKE_EXTS
    language = detect_language(path)
    is_code = language != "unknown" and not (is_doc or is_config)
    return PathClass(
        extension=ext or None,
        language=language,
        is_code=is_code,
        is_doc=is_doc,
        is_config=is_config,
    )
