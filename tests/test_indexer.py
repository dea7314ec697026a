import asyncio
import json
import shutil

import httpx
import numpy as np
import pytest

from codescope import config as config_module
from codescope.analysis import ParsedFile
from codescope.config import EmbeddingSettings, load_config
from codescope.embeddings import EmbeddingQueue, EmbeddingService, HashEmbeddingProvider
from codescope.errors import EmbeddingQueueFullError
from codescope.indexer import CodeIndex, SearchOptions, generate_preview
from codescope.storage.trigram import ROCKSDICT_AVAILABLE

LOGIN = "src/auth/login.ts"
CRYPTO = "src/utils/crypto.ts"
MESSAGES = "src/i18n/messages.ts"
README = "docs/README.md"

LEXICAL = SearchOptions(semantic=False)


def _search(index, query, options=LEXICAL):
    return asyncio.run(index.search(query, options))


def _paths(response):
    return [r.path for r in response.results]


def test_symbol_query_finds_defining_file(plain_index):
    response = _search(plain_index, "validateUser")
    assert _paths(response) == [LOGIN]
    top = response.results[0]
    assert top.kind == "symbol"
    assert top.symbol == "validateUser"
    assert top.line == 3
    assert "validateUser" in top.preview
    assert response.intent == "code"
    assert response.degraded is False


def test_korean_query(plain_index):
    response = _search(plain_index, "안녕하세요")
    assert _paths(response)[0] == MESSAGES
    assert response.results[0].line == 1


def test_file_filter(plain_index):
    response = _search(plain_index, "hashPassword in:utils")
    assert _paths(response) == [CRYPTO]


def test_type_filter_drops_files_without_matching_symbols(plain_index):
    response = _search(plain_index, "function:hashPassword")
    paths = _paths(response)
    assert paths[0] == CRYPTO
    assert README not in paths
    assert MESSAGES not in paths


def test_usage_query_reaches_callers(plain_index):
    response = _search(plain_index, "usages:hashPassword")
    assert response.parsed.intent == "usage"
    assert {LOGIN, CRYPTO} <= set(_paths(response))


def test_max_results(plain_index):
    response = _search(plain_index, "string", SearchOptions(semantic=False, max_results=1))
    assert len(response.results) == 1


def test_empty_query(plain_index):
    response = _search(plain_index, "   ")
    assert response.results == []
    assert response.candidate_count == 0


def test_clusters_include_dependency_neighbours(plain_index):
    response = _search(plain_index, "validateUser")
    cluster = response.clusters[0]
    assert cluster.path == LOGIN
    assert cluster.seeds[0].symbol.name == "validateUser"
    assert any(m.path == CRYPTO and m.relation == "dependency" for m in cluster.siblings)

    local = _search(plain_index, "validateUser scope:local")
    assert all(m.relation != "dependency" for m in local.clusters[0].siblings)


def test_exports_are_marked(plain_index):
    symbols = {s.name: s for s in plain_index.store.read_symbols(LOGIN)}
    assert "export" in symbols["validateUser"].modifiers
    assert "export" not in symbols["handleLogin"].modifiers


def test_disabled_embeddings_degrade_gracefully(plain_index):
    response = _search(plain_index, "validateUser", SearchOptions())
    assert response.degraded is True
    assert response.reasons == ["embeddings_disabled"]
    assert _paths(response) == [LOGIN]


def test_evidence_pack_is_saved(plain_index):
    response = _search(plain_index, "validateUser", SearchOptions(semantic=False, save_evidence=True))
    pack = plain_index.store.load_evidence_pack(response.pack_id)
    assert pack["query"] == "validateUser"
    assert pack["items"][0]["path"] == LOGIN
    assert "save_evidence" not in pack["options"]


def test_response_serializes(plain_index):
    data = _search(plain_index, "validateUser").to_dict()
    assert data["results"][0]["path"] == LOGIN
    assert data["parsed"]["terms"] == ["validateUser"]
    assert data["clusters"][0]["seeds"][0]["symbol"]["name"] == "validateUser"


def test_remove_file(plain_index):
    assert plain_index.remove_file(LOGIN) is True
    assert plain_index.remove_file(LOGIN) is False
    assert plain_index.store.get_file(LOGIN) is None
    assert not plain_index.trigrams.has_file(LOGIN)
    assert LOGIN not in _paths(_search(plain_index, "validateUser"))


def test_index_stats(plain_index):
    stats = plain_index.get_index_stats()
    assert stats["files"] == 4
    assert stats["trigram_files"] == 4
    assert stats["embeddings_provider"]["provider"] == "disabled"
    assert stats["embedding_queue"]["active"] == 0


def test_reopen_loads_persisted_trigrams(plain_index, test_index_path):
    plain_index.close()
    reopened = CodeIndex(test_index_path)
    try:
        assert reopened.trigrams.list_files() == sorted([LOGIN, CRYPTO, MESSAGES, README])
        assert _paths(_search(reopened, "validateUser")) == [LOGIN]
    finally:
        reopened.close()


def test_missing_trigram_store_is_rebuilt(plain_index, test_index_path):
    plain_index.close()
    shutil.rmtree(test_index_path / "trigrams.rocksdict")
    reopened = CodeIndex(test_index_path)
    try:
        assert len(reopened.trigrams) == 4
        assert reopened.trigrams.search("hashPassword")[0][0] in (CRYPTO, LOGIN)
    finally:
        reopened.close()


def test_embed_pending_chunks_is_incremental(code_index, sample_files):
    first = asyncio.run(code_index.embed_pending_chunks())
    assert first["embedded"] == 4
    assert first["timeouts"] == 0
    assert asyncio.run(code_index.embed_pending_chunks())["embedded"] == 0

    crypto = next(p for p in sample_files if p.path == CRYPTO)
    assert code_index.index_file(crypto)["removed_chunks"] == 0
    assert asyncio.run(code_index.embed_pending_chunks())["embedded"] == 0

    login = next(p for p in sample_files if p.path == LOGIN)
    changed = ParsedFile(
        path=login.path,
        content=login.content + "// trailing note\n",
        symbols=login.symbols,
        dependencies=login.dependencies,
        exports=login.exports,
    )
    assert code_index.index_file(changed)["removed_chunks"] == 1
    assert asyncio.run(code_index.embed_pending_chunks())["embedded"] == 1
    assert code_index.store.count_embeddings() == 4


def test_semantic_search_finds_identical_chunk(code_index):
    asyncio.run(code_index.embed_pending_chunks())
    chunk = code_index.store.list_chunks_for_file(CRYPTO)[0]
    hits = asyncio.run(code_index.semantic_search(chunk.text, k=3))
    assert hits[0].id == chunk.id
    assert hits[0].score == pytest.approx(1.0, abs=1e-5)


def test_hybrid_search_is_not_degraded(code_index):
    asyncio.run(code_index.embed_pending_chunks())
    response = asyncio.run(code_index.search("hashPassword"))
    assert response.degraded is False
    assert response.reasons == []
    assert CRYPTO in _paths(response)


def test_rebuild_vector_index(code_index):
    asyncio.run(code_index.embed_pending_chunks())
    summary = code_index.rebuild_vector_index()
    assert summary["provider"] == "local"
    assert summary["model"] == "hash-64"
    assert summary["vectors"] == 4
    assert summary["dims"] == 64


class _SlowProvider(HashEmbeddingProvider):
    async def embed(self, texts):
        await asyncio.sleep(0.5)
        return [np.zeros(self.dims, dtype=np.float32) for _ in texts]


def test_embedding_timeout_degrades_search(tmp_path, sample_files, local_embeddings):
    service = EmbeddingService(
        local_embeddings,
        provider=_SlowProvider(model="hash-64", dims=64),
        queue=EmbeddingQueue(concurrency=1, default_timeout=0.02),
    )
    index = CodeIndex(tmp_path / "slow", embedding_service=service, persist_trigrams=False)
    try:
        for parsed in sample_files:
            index.index_file(parsed)
        response = asyncio.run(index.search("validateUser"))
        assert response.degraded is True
        assert response.reasons == ["embedding_timeout"]
        assert _paths(response) == [LOGIN]
        summary = asyncio.run(index.embed_pending_chunks())
        assert summary["timeouts"] == summary["batches"] == 1
        assert summary["embedded"] == 0
    finally:
        index.close()


def test_provider_error_degrades_search(tmp_path, sample_files):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    settings = EmbeddingSettings(
        provider="external",
        model="text-embedding-3-small",
        api_key="sk-test",
        endpoint="https://embeddings.test/v1/embeddings",
    )
    service = EmbeddingService(settings, transport=httpx.MockTransport(handler))
    index = CodeIndex(tmp_path / "ext", embedding_service=service, persist_trigrams=False)
    try:
        for parsed in sample_files:
            index.index_file(parsed)
        response = asyncio.run(index.search("validateUser"))
        assert response.degraded is True
        assert response.reasons == ["embedding_provider_error"]
        assert _paths(response) == [LOGIN]
    finally:
        index.close()


class _QueueAlwaysFull(EmbeddingQueue):
    async def run(self, factory, timeout=None, label=None):
        raise EmbeddingQueueFullError(0)


def test_full_embedding_queue_degrades_search(tmp_path, sample_files, local_embeddings):
    service = EmbeddingService(local_embeddings, queue=_QueueAlwaysFull(concurrency=1))
    index = CodeIndex(tmp_path / "full", embedding_service=service, persist_trigrams=False)
    try:
        for parsed in sample_files:
            index.index_file(parsed)
        response = asyncio.run(index.search("validateUser"))
        assert response.degraded is True
        assert response.reasons == ["embedding_queue_full"]
        assert _paths(response) == [LOGIN]
    finally:
        index.close()


def test_generate_preview():
    lines = {1: "import x", 2: "  Bar baz bar  ", 3: "bar"}
    assert generate_preview(lines, ["bar"]) == (2, "Bar baz bar")
    assert generate_preview({1: "", 2: " first "}, ["zzz"]) == (2, "first")
    assert generate_preview({}, ["x"]) == (1, "")


def test_from_config_uses_global_config(tmp_path, monkeypatch):
    if not ROCKSDICT_AVAILABLE:
        pytest.skip("rocksdict is required for the trigram store")
    monkeypatch.setattr(config_module, "_config", None)
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"index": {"path": str(tmp_path / "idx")}, "search": {"max_results": 7}})
    )
    load_config(path)
    index = CodeIndex.from_config()
    try:
        assert index.index_path == (tmp_path / "idx").resolve()
        assert index.search_settings.max_results == 7
        assert index.embeddings.enabled is False
    finally:
        index.close()
