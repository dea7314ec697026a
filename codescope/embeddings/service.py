# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Provider + queue + prefixing, wired from one EmbeddingSettings value."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import httpx
import numpy as np

from ..config import EmbeddingSettings
from .providers import EmbeddingProvider, create_embedding_provider
from .queue import EmbeddingQueue
from .text import apply_embedding_prefix

logger = logging.getLogger(__name__)


class EmbeddingService:
    def __init__(
        self,
        settings: EmbeddingSettings,
        *,
        provider: Optional[EmbeddingProvider] = None,
        queue: Optional[EmbeddingQueue] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.provider = provider or create_embedding_provider(settings, transport=transport)
        self.queue = queue or EmbeddingQueue(
            concurrency=settings.concurrency,
            default_timeout=settings.timeout_seconds,
            max_queue_size=settings.max_queue_size,
        )
        logger.info(
            "Embeddings: provider=%s model=%s dims=%s concurrency=%d",
            self.provider.provider,
            self.provider.model,
            self.provider.dims or "auto",
            self.queue.concurrency,
        )

    @property
    def enabled(self) -> bool:
        return self.provider.enabled

    @property
    def provider_id(self) -> str:
        return self.provider.provider

    @property
    def model(self) -> str:
        return self.provider.model

    async def embed_batch(
        self, texts: Sequence[str], mode: str = "passage", label: Optional[str] = None
    ) -> list[np.ndarray]:
        """Embed one batch through the queue. Empty when embeddings are disabled."""
        if not self.enabled or not texts:
            return []
        prepared = apply_embedding_prefix(
            texts, mode, self.provider.model, enabled=self.settings.prefix_enabled
        )
        return await self.queue.run(lambda: self.provider.embed(prepared), label=label)

    async def embed_query(self, text: str) -> Optional[np.ndarray]:
        vectors = await self.embed_batch([text], mode="query", label="query")
        return vectors[0] if vectors else None
