"""Stateless text chunking and token-estimation utilities."""

from __future__ import annotations

import hashlib
from collections import Counter
from dataclasses import dataclass

try:
    import tiktoken  # type: ignore

    TIKTOKEN_AVAILABLE = True
except Exception:
    tiktoken = None  # type: ignore
    TIKTOKEN_AVAILABLE = False


@dataclass(frozen=True)
class DocumentChunk:
    """A bounded contiguous span of a file; the unit of embedding."""

    id: str
    file_path: str
    ordinal: int
    text: str
    start_line: int
    end_line: int
    start_char: int
    end_char: int
    content_hash: str


def estimate_tokens(s: str) -> int:
    """Cheap length-based estimate (roughly four characters per token)."""
    if not s:
        return 0
    return max(1, (len(s) + 3) // 4)


def count_tokens(s: str, model: str | None = None) -> int:
    """Count tokens for a string using tiktoken when available."""
    if not s:
        return 0
    try:
        if TIKTOKEN_AVAILABLE and model:
            try:
                enc = tiktoken.encoding_for_model(model)  # type: ignore[union-attr]
            except Exception:
                enc = tiktoken.get_encoding("cl100k_base")  # type: ignore[union-attr]
            return len(enc.encode(s))
    except Exception:
        pass
    return estimate_tokens(s)


def chunk_text(
    text: str, max_lines: int = 100, overlap: int = 10
) -> list[tuple[int, int, int, str]]:
    """Split text into overlapping chunks with line tracking."""
    lines = text.splitlines()
    chunks = []
    i = 0
    chunk_idx = 0
    step = max(1, max_lines - overlap)

    while i < len(lines):
        start = i
        end = min(i + max_lines, len(lines))
        if start >= end:
            break

        chunk_text = "\n".join(lines[start:end])
        chunks.append((chunk_idx, start + 1, end, chunk_text))  # 1-indexed lines
        chunk_idx += 1
        if end == len(lines):
            break
        i += step

    return chunks


def _line_offsets(text: str) -> list[int]:
    offsets = [0]
    for line in text.splitlines(keepends=True):
        offsets.append(offsets[-1] + len(line))
    return offsets


def chunk_document(
    path: str, text: str, max_lines: int = 80, overlap: int = 20
) -> list[DocumentChunk]:
    """Chunk a file into :class:`DocumentChunk` records with stable ids.

    The id hashes the path together with the chunk's content (and its
    occurrence count among identical chunks), so a chunk whose text did not
    change keeps its id across re-indexing.
    """
    offsets = _line_offsets(text)
    seen: Counter[str] = Counter()
    out: list[DocumentChunk] = []
    for ordinal, start_line, end_line, body in chunk_text(text, max_lines, overlap):
        if not body.strip():
            continue
        content_hash = hashlib.sha256(body.encode("utf-8")).hexdigest()
        occurrence = seen[content_hash]
        seen[content_hash] += 1
        chunk_id = hashlib.sha1(
            f"{path}\x00{content_hash}\x00{occurrence}".encode("utf-8")
        ).hexdigest()
        start_char = offsets[start_line - 1]
        end_char = min(offsets[min(end_line, len(offsets) - 1)], len(text))
        out.append(
            DocumentChunk(
                id=chunk_id,
                file_path=path,
                ordinal=ordinal,
                text=body,
                start_line=start_line,
                end_line=end_line,
                start_char=start_char,
                end_char=end_char,
                content_hash=content_hash,
            )
        )
    return out
