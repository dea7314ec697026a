"""Text normalization shared by indexing and query time."""

from __future__ import annotations

import re
import string
import unicodedata

_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)
_CAMEL_PARTS = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")


def _is_word_char(ch: str) -> bool:
    # Combining marks stay attached to their base letter (Devanagari, Thai, ...)
    return ch.isalnum() or unicodedata.category(ch).startswith("M")


def normalize(text: str) -> str:
    """Lowercase ASCII, keep other letters and digits, everything else becomes a space.

    >>> normalize("Hello-World!")
    'hello world'
    >>> normalize("한국어 테스트 123!")
    '한국어 테스트 123'
    """
    if not text:
        return ""
    lowered = text.translate(_ASCII_LOWER)
    cleaned = "".join(ch if _is_word_char(ch) else " " for ch in lowered)
    return " ".join(cleaned.split())


def words(text: str) -> list[str]:
    return normalize(text).split()


def identifier_tokens(text: str) -> list[str]:
    """Normalized words plus the camelCase/PascalCase parts of raw identifiers."""
    out = words(text)
    seen = set(out)
    for raw in re.split(r"[^A-Za-z0-9]+", text or ""):
        if not raw:
            continue
        parts = _CAMEL_PARTS.findall(raw)
        if len(parts) < 2:
            continue
        for part in parts:
            low = part.translate(_ASCII_LOWER)
            if low not in seen:
                seen.add(low)
                out.append(low)
    return out
