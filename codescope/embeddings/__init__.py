"""Embedding providers, prefixing and the bounded embedding queue."""

from .providers import (DisabledEmbeddingProvider, EmbeddingProvider,
                        ExternalEmbeddingProvider, HashEmbeddingProvider,
                        create_embedding_provider, fnv1a_32)
from .queue import EmbeddingQueue
from .service import EmbeddingService
from .text import apply_embedding_prefix, requires_prefix

__all__ = [
    "DisabledEmbeddingProvider",
    "EmbeddingProvider",
    "EmbeddingQueue",
    "EmbeddingService",
    "ExternalEmbeddingProvider",
    "HashEmbeddingProvider",
    "apply_embedding_prefix",
    "create_embedding_provider",
    "fnv1a_32",
    "requires_prefix",
]
