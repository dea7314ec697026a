# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Hybrid code index for codescope.

Combines a trigram candidate stage, multi-field BM25 ranking and optional
vector similarity over chunk embeddings. Parsing happens elsewhere: callers
hand in :class:`ParsedFile` facts and the index persists and searches them.
"""

import logging
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from time import perf_counter
from typing import Any, Optional, Sequence

from .analysis import ParsedFile, Symbol, chunk_document, detect_language
from .analysis.symbols import normalize_path
from .config import (Config, EmbeddingSettings, SearchSettings,
                     VectorIndexSettings, get_config)
from .embeddings import EmbeddingService
from .errors import EmbeddingQueueFullError, EmbeddingTimeoutError, ProviderError
from .search.candidates import CandidateCollector
from .search.clusters import (ClusterBuilder, ClusterRanker, SearchCandidate,
                              SearchCluster)
from .search.query import (INTENT_USAGE, ParsedQuery, QueryIntentDetector,
                           QueryParser)
from .search.ranking import (FIELD_BODY, FIELD_COMMENT, FIELD_EXPORT,
                             FIELD_PATH, FIELD_SIGNATURE, FIELD_SYMBOL,
                             BM25FRanking, FieldDocument, weights_for_intent)
from .search.results import ResultOptions, ResultProcessor, SearchResult
from .storage.database import IndexStore
from .storage.trigram import TrigramIndex, TrigramPostingStore, compute_stats
from .storage.vector import VectorHit, VectorIndexManager

logger = logging.getLogger(__name__)

EXPORT_MODIFIERS = {"export", "exported", "public"}


@dataclass(frozen=True)
class SearchOptions:
    file_types: Optional[Sequence[str]] = None
    deduplicate_by_content: bool = False
    group_by_file: bool = False
    snippet_length: Optional[int] = None
    max_results: Optional[int] = None
    semantic: bool = True
    save_evidence: bool = False

    def result_options(self) -> ResultOptions:
        return ResultOptions(
            file_types=self.file_types,
            deduplicate_by_content=self.deduplicate_by_content,
            group_by_file=self.group_by_file,
            snippet_length=self.snippet_length,
        )


@dataclass
class SearchResponse:
    query: str
    parsed: ParsedQuery
    intent: str
    results: list[SearchResult] = field(default_factory=list)
    scores: dict[str, float] = field(default_factory=dict)
    clusters: list[SearchCluster] = field(default_factory=list)
    degraded: bool = False
    reasons: list[str] = field(default_factory=list)
    candidate_count: int = 0
    pack_id: Optional[str] = None
    duration_s: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "parsed": self.parsed.to_dict(),
            "intent": self.intent,
            "results": [r.to_dict() for r in self.results],
            "scores": self.scores,
            "clusters": [c.to_dict() for c in self.clusters],
            "degraded": self.degraded,
            "reasons": list(self.reasons),
            "candidate_count": self.candidate_count,
            "pack_id": self.pack_id,
            "duration_s": self.duration_s,
        }


def generate_preview(lines: dict[int, str], terms: Sequence[str]) -> tuple[int, str]:
    """Pick the line with the most term hits; fall back to the first non-empty line."""
    lowered = [t.lower() for t in terms if t]
    best_line, best_hits = 0, 0
    for number in sorted(lines):
        text = lines[number].lower()
        hits = sum(text.count(term) for term in lowered)
        if hits > best_hits:
            best_line, best_hits = number, hits
    if best_hits:
        return best_line, lines[best_line].strip()
    for number in sorted(lines):
        if lines[number].strip():
            return number, lines[number].strip()
    return 1, ""


class CodeIndex:
    """Hybrid index supporting lexical, symbol-aware and semantic search."""

    def __init__(
        self,
        index_path: Path,
        *,
        embedding_settings: Optional[EmbeddingSettings] = None,
        search_settings: Optional[SearchSettings] = None,
        vector_settings: Optional[VectorIndexSettings] = None,
        embedding_service: Optional[EmbeddingService] = None,
        persist_trigrams: bool = True,
    ):
        self.index_path = index_path
        self.index_path.mkdir(parents=True, exist_ok=True)
        self.search_settings = search_settings or SearchSettings()

        try:
            self.store = IndexStore(self.index_path / "index.db")
        except Exception:
            logger.exception("Failed to initialize index store")
            raise

        posting_store = None
        if persist_trigrams:
            try:
                posting_store = TrigramPostingStore(self.index_path / "trigrams.rocksdict")
            except Exception as exc:
                logger.exception("Failed to initialize trigram store")
                raise RuntimeError(
                    "trigram initialization failed - RocksDB trigrams are required"
                ) from exc
        self.trigrams = TrigramIndex(posting_store)
        self._load_trigrams()

        self.embeddings = embedding_service or EmbeddingService(
            embedding_settings or EmbeddingSettings()
        )
        self.vectors = VectorIndexManager(self.store, vector_settings)

        self.parser = QueryParser()
        self.intent_detector = QueryIntentDetector()
        self.collector = CandidateCollector(
            self.trigrams,
            self.store,
            min_candidates=self.search_settings.min_candidates,
            fallback_limit=self.search_settings.fallback_limit,
            trigram_limit=self.search_settings.trigram_limit,
        )
        self.ranking = BM25FRanking()
        self.cluster_builder = ClusterBuilder(self.store)
        self.cluster_ranker = ClusterRanker()
        self.result_processor = ResultProcessor()

    @classmethod
    def from_config(
        cls, config: Optional[Config] = None, index_path: Optional[Path] = None
    ) -> "CodeIndex":
        """Resolve every settings value up front; configuration errors surface here.

        Without an explicit ``config`` the process-wide one from
        :func:`get_config` is used.
        """
        config = config or get_config()
        return cls(
            index_path or config.index_path,
            embedding_settings=config.embedding_settings(),
            search_settings=config.search_settings(),
            vector_settings=config.vector_index_settings(),
        )

    def _load_trigrams(self) -> None:
        loaded = self.trigrams.load()
        stored = self.store.list_files()
        stored_set = set(stored)
        if loaded == len(stored) and set(self.trigrams.list_files()) == stored_set:
            return
        logger.warning(
            "Trigram postings out of sync with store (%d vs %d files); rebuilding",
            loaded,
            len(stored),
        )
        start = perf_counter()
        for path in self.trigrams.list_files():
            if path not in stored_set:
                self.trigrams.remove_file(path)
        for path in stored:
            self.trigrams.add_file(path, self.store.read_file_text(path))
        self.trigrams.save()
        logger.info(
            "Rebuilt trigram postings for %d files in %.3fs", len(stored), perf_counter() - start
        )

    # --- ingestion ---------------------------------------------------------

    def index_file(self, parsed: ParsedFile) -> dict[str, Any]:
        """Persist one parsed file, replacing everything previously stored for its path."""
        start = perf_counter()
        path = parsed.path
        settings = self.search_settings
        chunks = chunk_document(path, parsed.content, settings.chunk_lines, settings.chunk_overlap)
        exports = set(parsed.exports)
        symbols = [
            replace(
                s,
                file_path=path,
                modifiers=(
                    tuple(s.modifiers) + ("export",)
                    if s.name in exports and "export" not in s.modifiers
                    else tuple(s.modifiers)
                ),
            )
            for s in parsed.symbols
        ]

        removed = self.store.replace_file(
            path,
            last_modified=parsed.last_modified,
            language=parsed.language or detect_language(path),
            symbols=symbols,
            dependencies=parsed.dependencies,
            unresolved=parsed.unresolved,
            chunks=chunks,
            trigram_stats=compute_stats(parsed.content),
        )
        self.trigrams.add_file(path, parsed.content)
        self.trigrams.save()
        if removed:
            self.vectors.remove_chunks(removed)

        logger.info(
            "Indexed %s symbols=%d chunks=%d removed_chunks=%d duration=%.3fs",
            path,
            len(symbols),
            len(chunks),
            len(removed),
            perf_counter() - start,
        )
        return {
            "path": path,
            "symbols": len(symbols),
            "chunks": len(chunks),
            "removed_chunks": len(removed),
        }

    def remove_file(self, path: str) -> bool:
        path = normalize_path(path)
        chunk_ids = self.store.chunk_ids_for_file(path)
        removed = self.store.delete_file(path)
        self.trigrams.remove_file(path)
        self.trigrams.save()
        if chunk_ids:
            self.vectors.remove_chunks(chunk_ids)
        if removed:
            logger.info("Removed %s from index", path)
        return removed

    def find_symbols(self, pattern: str, limit: int = 100) -> list[Symbol]:
        return self.store.search_symbols(pattern, limit)

    # --- search ------------------------------------------------------------

    def _field_document(self, path: str, symbols: Sequence[Symbol]) -> FieldDocument:
        return FieldDocument(
            id=path,
            fields={
                FIELD_PATH: path,
                FIELD_SYMBOL: " ".join(s.name for s in symbols),
                FIELD_SIGNATURE: " ".join(s.signature for s in symbols if s.signature),
                FIELD_EXPORT: " ".join(
                    s.name for s in symbols if EXPORT_MODIFIERS.intersection(s.modifiers)
                ),
                FIELD_COMMENT: " ".join(s.doc for s in symbols if s.doc),
                FIELD_BODY: self.store.read_file_text(path),
            },
        )

    async def _semantic_scores(
        self, text: str, response: SearchResponse
    ) -> dict[str, float]:
        if not self.embeddings.enabled:
            response.degraded = True
            response.reasons.append("embeddings_disabled")
            return {}
        try:
            hits = await self.semantic_search(text, self.search_settings.semantic_k)
        except EmbeddingTimeoutError:
            logger.warning("Query embedding timed out; returning lexical results only")
            response.degraded = True
            response.reasons.append("embedding_timeout")
            return {}
        except EmbeddingQueueFullError:
            logger.warning("Embedding queue full; returning lexical results only")
            response.degraded = True
            response.reasons.append("embedding_queue_full")
            return {}
        except ProviderError as exc:
            logger.warning("Query embedding failed (%s); returning lexical results only", exc)
            response.degraded = True
            response.reasons.append("embedding_provider_error")
            return {}
        if not hits:
            return {}
        chunks = self.store.get_chunks([h.id for h in hits])
        best: dict[str, float] = {}
        for hit in hits:
            chunk = chunks.get(hit.id)
            if chunk is None:
                continue
            best[chunk.file_path] = max(best.get(chunk.file_path, 0.0), hit.score)
        return best

    async def search(
        self, raw_query: str, options: Optional[SearchOptions] = None
    ) -> SearchResponse:
        """Run the full lexical (+ optional semantic) pipeline for one query."""
        start = perf_counter()
        options = options or SearchOptions()
        parsed = self.parser.parse(raw_query)
        response = SearchResponse(
            query=raw_query, parsed=parsed, intent=self.intent_detector.detect(raw_query)
        )
        terms = parsed.terms
        if not terms:
            response.duration_s = round(perf_counter() - start, 4)
            return response

        candidates = self.collector.collect(terms)
        response.candidate_count = len(candidates)
        file_filter = (parsed.filters.file or "").lower()
        wanted_types = set(parsed.filters.types)

        def _admit(path: str) -> Optional[list[Symbol]]:
            if file_filter and file_filter not in path.lower():
                return None
            symbols = self.store.read_symbols(path) or []
            if wanted_types:
                symbols = [s for s in symbols if s.kind in wanted_types]
                if not symbols:
                    return None
            return symbols

        # Guaranteed filename/symbol hits first, then the remaining candidates up to the cap.
        max_files = self.search_settings.max_candidate_files
        ordered = [p for p in candidates.paths if candidates.sources[p] & {"filename", "symbol"}]
        guaranteed = set(ordered)
        ordered += [p for p in candidates.paths if p not in guaranteed][
            : max(0, max_files - len(ordered))
        ]

        symbols_by_path: dict[str, list[Symbol]] = {}
        for path in ordered:
            admitted = _admit(path)
            if admitted is not None:
                symbols_by_path[path] = admitted

        semantic: dict[str, float] = {}
        if options.semantic:
            semantic = await self._semantic_scores(" ".join(terms), response)
            for path in semantic:
                if path not in symbols_by_path:
                    admitted = _admit(path)
                    if admitted is not None:
                        symbols_by_path[path] = admitted

        weights = weights_for_intent(response.intent)
        if parsed.intent == INTENT_USAGE:
            weights[FIELD_BODY] *= 2.0
            weights[FIELD_SYMBOL] *= 0.5

        documents = [self._field_document(p, syms) for p, syms in symbols_by_path.items()]
        scores = dict(self.ranking.rank(documents, terms, weights))
        for path, similarity in semantic.items():
            if path in scores:
                scores[path] += self.search_settings.vector_weight * similarity

        max_results = options.max_results or self.search_settings.max_results
        ranked = sorted(
            ((p, s) for p, s in scores.items() if s > 0), key=lambda item: (-item[1], item[0])
        )[:max_results]
        response.scores = {p: round(s, 6) for p, s in ranked}

        results: list[SearchResult] = []
        seeds: list[SearchCandidate] = []
        lowered_terms = [t.lower() for t in terms]
        for path, score in ranked:
            symbols = symbols_by_path[path]
            line, preview = generate_preview(self.store.read_file_lines(path), terms)
            seed_symbol = ClusterBuilder.pick_seed(symbols, terms, line)
            matched = seed_symbol is not None and any(
                t in seed_symbol.name.lower() for t in lowered_terms
            )
            results.append(
                SearchResult(
                    path=path,
                    line=seed_symbol.line if matched else line,
                    preview=preview,
                    score=score,
                    kind="symbol" if matched else "file",
                    symbol=seed_symbol.name if matched else None,
                )
            )
            seeds.append(
                SearchCandidate(
                    path=path,
                    score=score,
                    line=line,
                    preview=preview,
                    symbol=seed_symbol,
                    sources=frozenset(candidates.sources.get(path, {"semantic"})),
                )
            )

        scope = parsed.filters.scope
        response.clusters = self.cluster_ranker.rank(
            self.cluster_builder.build(
                seed,
                terms,
                symbols_by_path[seed.path],
                candidate_paths=symbols_by_path.keys(),
                scope=scope,
            )
            for seed in seeds
        )
        response.results = self.result_processor.process(results, options.result_options())

        if options.save_evidence:
            response.pack_id = self.store.save_evidence_pack(
                raw_query,
                {k: v for k, v in asdict(options).items() if k != "save_evidence"},
                [r.to_dict() for r in response.results],
                ttl_seconds=self.search_settings.evidence_ttl_seconds,
            )

        response.duration_s = round(perf_counter() - start, 4)
        logger.info(
            "search completed query=%r intent=%s candidates=%d results=%d degraded=%s duration=%.3fs",
            raw_query,
            response.intent,
            response.candidate_count,
            len(response.results),
            response.degraded,
            response.duration_s,
        )
        return response

    async def semantic_search(self, text: str, k: int = 10) -> list[VectorHit]:
        """Nearest chunks for ``text``; empty when embeddings are disabled."""
        if not self.embeddings.enabled or not text.strip():
            return []
        query = await self.embeddings.embed_query(text)
        if query is None:
            return []
        return self.vectors.search(query, self.embeddings.provider_id, self.embeddings.model, k)

    # --- embeddings & vectors ---------------------------------------------

    async def embed_pending_chunks(self, limit: Optional[int] = None) -> dict[str, int]:
        """Embed chunks with no record for the active provider/model.

        A timed-out batch is skipped (it stays pending for the next run);
        provider errors propagate to the caller.
        """
        summary = {"embedded": 0, "batches": 0, "timeouts": 0}
        if not self.embeddings.enabled:
            return summary
        provider, model = self.embeddings.provider_id, self.embeddings.model
        pending = self.store.list_chunks_missing_embeddings(provider, model, limit or 1_000_000)
        batch_size = self.embeddings.settings.batch_size
        for i in range(0, len(pending), batch_size):
            batch = pending[i : i + batch_size]
            summary["batches"] += 1
            try:
                vectors = await self.embeddings.embed_batch(
                    [c.text for c in batch], mode="passage", label=f"chunks[{i}:{i + len(batch)}]"
                )
            except EmbeddingTimeoutError:
                summary["timeouts"] += 1
                continue
            for chunk, vector in zip(batch, vectors):
                if self.store.put_embedding(chunk.id, provider, model, vector):
                    summary["embedded"] += 1
                    self.vectors.upsert(provider, model, chunk.id, vector)
        logger.info(
            "Embedded %d chunks in %d batches (provider=%s model=%s timeouts=%d)",
            summary["embedded"],
            summary["batches"],
            provider,
            model,
            summary["timeouts"],
        )
        return summary

    def rebuild_vector_index(
        self, provider: Optional[str] = None, model: Optional[str] = None
    ) -> dict[str, Any]:
        return self.vectors.rebuild(
            provider or self.embeddings.provider_id, model or self.embeddings.model
        )

    def get_index_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = dict(self.store.stats())
        stats["trigram_files"] = len(self.trigrams)
        stats["trigrams"] = self.trigrams.gram_count
        stats["embeddings_provider"] = self.embeddings.provider.describe()
        stats["embedding_queue"] = self.embeddings.queue.stats()
        stats["vector_indexes"] = self.vectors.stats()
        return stats

    def close(self) -> None:
        """Close all database connections."""
        try:
            self.trigrams.close()
        except Exception:
            logger.debug("Error closing trigram index", exc_info=True)
        self.store.close()
