import json

import pytest

from codescope import config as config_module
from codescope.config import (Config, SearchSettings, get_config, load_config,
                              resolve_embedding_settings)
from codescope.errors import ConfigurationError


def test_default_embeddings_are_disabled():
    settings = resolve_embedding_settings({})
    assert settings.provider == "disabled"
    assert settings.enabled is False
    assert settings.dims == 0


def test_provider_aliases():
    assert resolve_embedding_settings({"provider": "hash"}).provider == "local"
    assert resolve_embedding_settings({"provider": "OFF"}).provider == "disabled"
    openai = resolve_embedding_settings({"provider": "openai", "api_key": "sk"})
    assert openai.provider == "external"
    assert openai.model == "text-embedding-3-small"


def test_local_defaults():
    settings = resolve_embedding_settings({"provider": "local"})
    assert settings.model == "hash-384"
    assert settings.dims == 384
    assert settings.normalize is True


def test_auto_resolution():
    assert resolve_embedding_settings({"provider": "auto"}).provider == "local"
    assert resolve_embedding_settings({"provider": "auto", "api_key": "sk"}).provider == "external"


def test_enabled_false_wins():
    settings = resolve_embedding_settings({"enabled": "false", "provider": "local"})
    assert settings.provider == "disabled"


@pytest.mark.parametrize(
    "raw",
    [
        {"provider": "quantum"},
        {"provider": "external"},
        {"provider": "external", "api_key": "sk", "endpoint": "ftp://nope"},
        {"provider": "local", "dimension": 0},
        {"provider": "local", "batch_size": "many"},
        {"provider": "local", "concurrency": 0},
        {"provider": "local", "timeout_seconds": -1},
    ],
)
def test_invalid_embedding_config(raw):
    with pytest.raises(ConfigurationError):
        resolve_embedding_settings(raw)


def test_from_dict_and_dot_access():
    cfg = Config.from_dict(
        {
            "log_level": "DEBUG",
            "index": {"path": "/tmp/codescope-idx"},
            "search": {"max_results": "5", "vector_weight": 1},
            "admin": {"api_key": "secret"},
        }
    )
    assert cfg.get("index.path") == "/tmp/codescope-idx"
    assert cfg.get("index.missing", "fallback") == "fallback"
    assert cfg.get("log_level.nested", 3) == 3
    assert cfg.log_level == "DEBUG"
    search = cfg.search_settings()
    assert search.max_results == 5
    assert search.vector_weight == 1.0
    assert search.snippet_length == SearchSettings().snippet_length
    assert cfg.admin_api_key == "secret"
    assert cfg.admin_allowed_ips == ["127.0.0.1", "::1"]
    assert cfg.admin_require_api_key is False


def test_invalid_search_and_vector_settings():
    with pytest.raises(ConfigurationError):
        Config.from_dict({"search": {"max_results": "lots"}}).search_settings()
    with pytest.raises(ConfigurationError):
        Config.from_dict({"vector_index": {"backend": "faiss"}}).vector_index_settings()


def test_lancedb_backend_uses_lance_dir(tmp_path):
    cfg = Config.from_dict({"index": {"path": str(tmp_path)}, "vector_index": {"backend": "lancedb"}})
    settings = cfg.vector_index_settings()
    assert settings.backend == "lancedb"
    assert settings.path == tmp_path.resolve() / "lancedb"


def test_load_from_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"embeddings": {"provider": "local", "dimension": 16}}))
    cfg = Config(path)
    settings = cfg.embedding_settings()
    assert settings.provider == "local"
    assert settings.dims == 16


def test_missing_file_falls_back_to_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CODESCOPE_EMBEDDINGS_PROVIDER", "local")
    monkeypatch.setenv("CODESCOPE_EMBEDDINGS_DIMENSION", "32")
    monkeypatch.setenv("CODESCOPE_ADMIN_ALLOWED_IPS", "10.0.0.1, 10.0.0.2")
    monkeypatch.setenv("CODESCOPE_ADMIN_REQUIRE_API_KEY", "true")
    monkeypatch.setenv("CODESCOPE_INDEX_PATH", str(tmp_path / "idx"))
    cfg = Config(tmp_path / "missing.json")
    assert cfg.embedding_settings().dims == 32
    assert cfg.admin_allowed_ips == ["10.0.0.1", "10.0.0.2"]
    assert cfg.admin_require_api_key is True
    assert cfg.index_path == (tmp_path / "idx").resolve()


def test_load_config_replaces_global(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"index": {"path": str(tmp_path / "idx")}}))
    loaded = load_config(path)
    assert get_config() is loaded
    assert get_config().index_path == (tmp_path / "idx").resolve()
