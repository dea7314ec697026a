# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Embedding providers.

The set is closed: disabled, local hash and an external HTTP endpoint. One
is picked at startup by :func:`create_embedding_provider`.
"""

from __future__ import annotations

import logging
from time import perf_counter
from typing import Optional, Sequence

import httpx
import numpy as np

from ..analysis.text import words
from ..config import EmbeddingSettings
from ..errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619


def fnv1a_32(token: str) -> int:
    h = FNV_OFFSET_BASIS
    for byte in token.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return (vec / norm).astype(np.float32)


class EmbeddingProvider:
    """Common contract: ids, dimensionality, normalization flag and ``embed``."""

    provider: str = "abstract"

    def __init__(self, model: str, dims: int, normalize: bool):
        self.model = model
        self.dims = dims
        self.normalize = normalize

    @property
    def enabled(self) -> bool:
        return True

    async def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        raise NotImplementedError

    def describe(self) -> dict:
        return {
            "provider": self.provider,
            "model": self.model,
            "dims": self.dims,
            "normalize": self.normalize,
        }


class DisabledEmbeddingProvider(EmbeddingProvider):
    provider = "disabled"

    def __init__(self, model: str = "none"):
        super().__init__(model=model, dims=0, normalize=False)

    @property
    def enabled(self) -> bool:
        return False

    async def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        return []


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic offline embeddings via signed feature hashing."""

    provider = "local"

    def __init__(self, model: str = "hash-384", dims: int = 384, normalize: bool = True):
        if dims <= 0:
            raise ConfigurationError(f"Hash embeddings need a positive dimension, got {dims}")
        super().__init__(model=model, dims=dims, normalize=normalize)

    def embed_one(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dims, dtype=np.float32)
        for token in words(text.lower()):
            h = fnv1a_32(token)
            vec[h % self.dims] += 1.0 if (h & 1) == 0 else -1.0
        return l2_normalize(vec) if self.normalize else vec

    async def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        return [self.embed_one(t) for t in texts]


class ExternalEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` endpoint over httpx."""

    provider = "external"

    def __init__(
        self,
        settings: EmbeddingSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(model=settings.model, dims=0, normalize=settings.normalize)
        self.endpoint = settings.endpoint
        self.api_key = settings.api_key
        self.batch_size = settings.batch_size
        self.timeout_seconds = settings.timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        kwargs = {"timeout": self.timeout_seconds}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def _post_batch(self, client: httpx.AsyncClient, batch: Sequence[str]) -> list[np.ndarray]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        resp = await client.post(
            self.endpoint, json={"model": self.model, "input": list(batch)}, headers=headers
        )
        if not resp.is_success:
            raise ProviderError(resp.status_code, resp.text, provider=self.provider)
        try:
            data = resp.json().get("data") or []
        except ValueError as exc:
            raise ProviderError(resp.status_code, f"invalid JSON body: {exc}") from exc
        if data and all(isinstance(item, dict) and "index" in item for item in data):
            data = sorted(data, key=lambda item: item["index"])
        vectors = [np.asarray(item["embedding"], dtype=np.float32) for item in data]
        if len(vectors) != len(batch):
            raise ProviderError(
                resp.status_code,
                f"expected {len(batch)} embeddings, got {len(vectors)}",
                provider=self.provider,
            )
        return vectors

    async def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        if not texts:
            return []
        start = perf_counter()
        out: list[np.ndarray] = []
        async with self._client() as client:
            for i in range(0, len(texts), self.batch_size):
                out.extend(await self._post_batch(client, texts[i : i + self.batch_size]))
        if out and self.dims == 0:
            self.dims = int(out[0].shape[0])
            logger.info("External embeddings model=%s dims=%d", self.model, self.dims)
        if self.normalize:
            out = [l2_normalize(v) for v in out]
        logger.debug(
            "External embed: %d texts in %.3fs (model=%s)", len(texts), perf_counter() - start, self.model
        )
        return out


def create_embedding_provider(
    settings: EmbeddingSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EmbeddingProvider:
    """Pick the provider variant for already-resolved settings."""
    if settings.provider == "disabled":
        return DisabledEmbeddingProvider()
    if settings.provider == "local":
        return HashEmbeddingProvider(
            model=settings.model, dims=settings.dims, normalize=settings.normalize
        )
    if settings.provider == "external":
        if not settings.api_key:
            raise ConfigurationError("External embeddings require an API key")
        return ExternalEmbeddingProvider(settings, transport=transport)
    raise ConfigurationError(f"Unresolved embedding provider {settings.provider!r}")
