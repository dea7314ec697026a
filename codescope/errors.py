# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Exception types raised by the codescope core."""

from __future__ import annotations


class CodescopeError(Exception):
    """Base class for all codescope errors."""


class ConfigurationError(CodescopeError):
    """The embedding (or other startup) configuration is unusable."""


class StoreIntegrityError(CodescopeError):
    """A schema migration failed; the store is not safe to use."""

    def __init__(self, message: str, *, version: int | None = None):
        super().__init__(message)
        self.version = version


class EmbeddingTimeoutError(CodescopeError, TimeoutError):
    """A single embedding call exceeded its time budget."""

    def __init__(self, timeout: float, label: str | None = None):
        what = f"Embedding call {label!r}" if label else "Embedding call"
        super().__init__(f"{what} timed out after {timeout:.3f}s")
        self.timeout = timeout
        self.label = label


class EmbeddingQueueFullError(CodescopeError):
    """The embedding queue refused a submission because it is at capacity."""

    def __init__(self, max_queue_size: int):
        super().__init__(f"Embedding queue is full (max_queue_size={max_queue_size})")
        self.max_queue_size = max_queue_size


class ProviderError(CodescopeError):
    """A remote embedding provider answered with a non-success response."""

    def __init__(self, status: int, body: str, *, provider: str = "external"):
        super().__init__(f"{provider} embedding request failed ({status}): {body}")
        self.status = status
        self.body = body
        self.provider = provider
