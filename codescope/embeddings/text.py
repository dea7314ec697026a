# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Instruction prefixes for models that expect ``query:`` / ``passage:`` inputs."""

from __future__ import annotations

from typing import Sequence

QUERY_PREFIX = "query: "
PASSAGE_PREFIX = "passage: "
MODES = {"query": QUERY_PREFIX, "passage": PASSAGE_PREFIX}

# Model ids containing one of these markers were trained with the prefixes
PREFIX_MODEL_MARKERS = ("e5",)


def requires_prefix(model: str | None) -> bool:
    lowered = (model or "").lower()
    return any(marker in lowered for marker in PREFIX_MODEL_MARKERS)


def has_prefix(text: str) -> bool:
    head = text.lstrip().lower()
    return head.startswith(QUERY_PREFIX) or head.startswith(PASSAGE_PREFIX)


def apply_embedding_prefix(
    texts: Sequence[str], mode: str, model: str | None, enabled: bool = True
) -> list[str]:
    """Prefix each text for ``mode`` when the model needs it. Idempotent."""
    if mode not in MODES:
        raise ValueError(f"mode must be one of {sorted(MODES)}, got {mode!r}")
    if not enabled or not requires_prefix(model):
        return list(texts)
    prefix = MODES[mode]
    return [t if has_prefix(t) else prefix + t for t in texts]
