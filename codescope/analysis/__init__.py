"""Pure analysis helpers: parsed-file facts, chunking, and language classification."""

from .chunking import DocumentChunk, chunk_document, chunk_text, count_tokens, estimate_tokens
from .languages import classify_path, detect_language
from .text import identifier_tokens, normalize, words
from .symbols import Dependency, ParsedFile, Symbol, UnresolvedImport

__all__ = [
    "Dependency",
    "DocumentChunk",
    "ParsedFile",
    "Symbol",
    "UnresolvedImport",
    "chunk_document",
    "chunk_text",
    "classify_path",
    "count_tokens",
    "detect_language",
    "estimate_tokens",
    "identifier_tokens",
    "normalize",
    "words",
]
