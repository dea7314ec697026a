# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""codescope: hybrid trigram, BM25F and vector retrieval over source trees."""

from .config import Config, EmbeddingSettings, SearchSettings, VectorIndexSettings
from .errors import (CodescopeError, ConfigurationError, EmbeddingQueueFullError,
                     EmbeddingTimeoutError, ProviderError, StoreIntegrityError)
from .indexer import CodeIndex, SearchOptions, SearchResponse

__version__ = "0.1.0"

__all__ = [
    "CodeIndex",
    "CodescopeError",
    "Config",
    "ConfigurationError",
    "EmbeddingQueueFullError",
    "EmbeddingSettings",
    "EmbeddingTimeoutError",
    "ProviderError",
    "SearchOptions",
    "SearchResponse",
    "SearchSettings",
    "StoreIntegrityError",
    "VectorIndexSettings",
]
