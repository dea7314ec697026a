# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Configuration loader for codescope.

Loads configuration from config.json file with fallback to environment variables.
The raw configuration is resolved once into frozen settings objects
(:class:`EmbeddingSettings`, :class:`SearchSettings`, :class:`VectorIndexSettings`)
which are passed explicitly to the components that need them.
"""

import os
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

EMBEDDING_PROVIDERS = ("disabled", "local", "external", "auto")
VECTOR_BACKENDS = ("bruteforce", "lancedb")

# Accepted spellings for each provider variant
_PROVIDER_ALIASES = {
    "disabled": "disabled",
    "none": "disabled",
    "off": "disabled",
    "local": "local",
    "hash": "local",
    "external": "external",
    "openai": "external",
    "auto": "auto",
}

DEFAULT_EXTERNAL_ENDPOINT = "https://api.openai.com/v1/embeddings"
DEFAULT_EXTERNAL_MODEL = "text-embedding-3-small"
DEFAULT_LOCAL_MODEL = "hash-384"
DEFAULT_LOCAL_DIMS = 384


def _parse_csv_list(raw_value: Optional[str]) -> list[str]:
    """Parse comma-separated environment variable values into a list."""
    if not raw_value:
        return []
    return [item.strip() for item in raw_value.split(",") if item.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class EmbeddingSettings:
    """Immutable embedding configuration, resolved once at startup."""

    provider: str = "disabled"
    model: str = DEFAULT_LOCAL_MODEL
    dims: int = DEFAULT_LOCAL_DIMS
    normalize: bool = True
    endpoint: str = DEFAULT_EXTERNAL_ENDPOINT
    api_key: Optional[str] = None
    batch_size: int = 32
    concurrency: int = 2
    timeout_seconds: float = 30.0
    max_queue_size: Optional[int] = None
    prefix_enabled: bool = True

    @property
    def enabled(self) -> bool:
        return self.provider != "disabled"


@dataclass(frozen=True)
class SearchSettings:
    """Tunables for the lexical/semantic search pipeline."""

    max_results: int = 20
    snippet_length: int = 240
    min_candidates: int = 20
    fallback_limit: int = 1200
    trigram_limit: int = 800
    max_candidate_files: int = 400
    vector_weight: float = 2.0
    semantic_k: int = 50
    chunk_lines: int = 80
    chunk_overlap: int = 20
    evidence_ttl_seconds: int = 3600


@dataclass(frozen=True)
class VectorIndexSettings:
    backend: str = "bruteforce"
    path: Optional[Path] = None


def resolve_embedding_settings(raw: Dict[str, Any]) -> EmbeddingSettings:
    """Validate a raw ``embeddings`` section and build :class:`EmbeddingSettings`.

    ``auto`` resolves to ``external`` when an API key is present and to
    ``local`` otherwise. Any unusable combination raises ConfigurationError.
    """
    raw = dict(raw or {})
    if "enabled" in raw and not _as_bool(raw.get("enabled")):
        return EmbeddingSettings(provider="disabled")

    provider_raw = str(raw.get("provider") or "disabled").strip().lower()
    provider = _PROVIDER_ALIASES.get(provider_raw)
    if provider is None:
        raise ConfigurationError(
            f"Unknown embeddings.provider {provider_raw!r}; "
            f"expected one of {', '.join(EMBEDDING_PROVIDERS)}"
        )

    api_key = raw.get("api_key") or None
    if provider == "auto":
        provider = "external" if api_key else "local"
        logger.info("embeddings.provider=auto resolved to %s", provider)

    model_raw = raw.get("model")
    if provider == "external":
        model = str(model_raw or DEFAULT_EXTERNAL_MODEL)
    else:
        model = str(model_raw or DEFAULT_LOCAL_MODEL)

    try:
        dims = int(raw.get("dimension", raw.get("dims", DEFAULT_LOCAL_DIMS)))
        batch_size = int(raw.get("batch_size", 32))
        concurrency = int(raw.get("concurrency", 2))
        timeout_seconds = float(raw.get("timeout_seconds", 30.0))
        max_queue = raw.get("max_queue_size")
        max_queue_size = int(max_queue) if max_queue not in (None, "", 0, "0") else None
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid numeric embeddings setting: {exc}") from exc

    if provider == "local" and dims <= 0:
        raise ConfigurationError(f"embeddings.dimension must be positive, got {dims}")
    if batch_size <= 0:
        raise ConfigurationError(f"embeddings.batch_size must be positive, got {batch_size}")
    if concurrency <= 0:
        raise ConfigurationError(f"embeddings.concurrency must be positive, got {concurrency}")
    if timeout_seconds <= 0:
        raise ConfigurationError(
            f"embeddings.timeout_seconds must be positive, got {timeout_seconds}"
        )
    if max_queue_size is not None and max_queue_size < 0:
        raise ConfigurationError(f"embeddings.max_queue_size must be >= 0, got {max_queue_size}")

    endpoint = str(raw.get("endpoint") or DEFAULT_EXTERNAL_ENDPOINT)
    if provider == "external":
        if not api_key:
            raise ConfigurationError("embeddings.provider=external requires embeddings.api_key")
        if not endpoint.startswith(("http://", "https://")):
            raise ConfigurationError(f"embeddings.endpoint must be an http(s) URL, got {endpoint!r}")

    return EmbeddingSettings(
        provider=provider,
        model=model,
        dims=dims if provider != "disabled" else 0,
        normalize=_as_bool(raw.get("normalize", True)),
        endpoint=endpoint,
        api_key=api_key,
        batch_size=batch_size,
        concurrency=concurrency,
        timeout_seconds=timeout_seconds,
        max_queue_size=max_queue_size,
        prefix_enabled=_as_bool(raw.get("prefix_enabled", True)),
    )


class Config:
    """Configuration manager for codescope."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config.json file. If None, searches in:
                1. ./config.json (current directory)
                2. ~/.codescope/config.json
                3. Falls back to environment variables
        """
        self.config_data: Dict[str, Any] = {}
        self._load_config(config_path)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Build a config from an in-memory mapping (no file or env lookups)."""
        cfg = cls.__new__(cls)
        cfg.config_data = json.loads(json.dumps(data))
        return cfg

    def _load_config(self, config_path: Optional[Path] = None):
        """Load configuration from file or environment."""
        if config_path:
            if config_path.exists():
                self._load_from_file(config_path)
                return
            logger.info(
                "Config path %s does not exist, using environment variables", config_path
            )
            self._load_from_env()
            return

        local_config = Path("config.json")
        if local_config.exists():
            self._load_from_file(local_config)
            return

        user_config = Path.home() / ".codescope" / "config.json"
        if user_config.exists():
            self._load_from_file(user_config)
            return

        logger.info("No config.json found, using environment variables")
        self._load_from_env()

    def _load_from_file(self, path: Path):
        """Load configuration from JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                self.config_data = json.load(f)
            logger.info("Loaded configuration from %s", path)
        except Exception as e:
            logger.error("Error loading config from %s: %s", path, e)
            self._load_from_env()

    def _load_from_env(self):
        """Load configuration from environment variables."""
        self.config_data = {
            "log_level": os.getenv("CODESCOPE_LOG_LEVEL", "INFO"),
            "index": {
                "path": os.getenv("CODESCOPE_INDEX_PATH", "~/.codescope_index"),
            },
            "embeddings": {
                "provider": os.getenv("CODESCOPE_EMBEDDINGS_PROVIDER", "disabled"),
                "model": os.getenv("CODESCOPE_EMBEDDINGS_MODEL") or None,
                "dimension": os.getenv("CODESCOPE_EMBEDDINGS_DIMENSION", str(DEFAULT_LOCAL_DIMS)),
                "normalize": _env_bool("CODESCOPE_EMBEDDINGS_NORMALIZE", "true"),
                "endpoint": os.getenv("CODESCOPE_EMBEDDINGS_ENDPOINT") or None,
                "api_key": (
                    os.getenv("CODESCOPE_EMBEDDINGS_API_KEY") or os.getenv("OPENAI_API_KEY") or None
                ),
                "batch_size": os.getenv("CODESCOPE_EMBEDDINGS_BATCH_SIZE", "32"),
                "concurrency": os.getenv("CODESCOPE_EMBEDDINGS_CONCURRENCY", "2"),
                "timeout_seconds": os.getenv("CODESCOPE_EMBEDDINGS_TIMEOUT", "30"),
                "max_queue_size": os.getenv("CODESCOPE_EMBEDDINGS_MAX_QUEUE") or None,
                "prefix_enabled": _env_bool("CODESCOPE_EMBEDDINGS_PREFIX", "true"),
            },
            "vector_index": {
                "backend": os.getenv("CODESCOPE_VECTOR_BACKEND", "bruteforce"),
            },
            "admin": self._load_admin_from_env(),
        }

    def _load_admin_from_env(self) -> Dict[str, Any]:
        """Load admin config from environment variables."""
        allowed_ips_raw = os.getenv("CODESCOPE_ADMIN_ALLOWED_IPS", "127.0.0.1,::1")
        return {
            "enabled": _env_bool("CODESCOPE_ADMIN_ENABLED", "true"),
            "api_key": os.getenv("CODESCOPE_ADMIN_API_KEY") or None,
            "require_api_key": _env_bool("CODESCOPE_ADMIN_REQUIRE_API_KEY", "false"),
            "allowed_ips": _parse_csv_list(allowed_ips_raw),
        }

    # Getters for easy access
    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key."""
        keys = key.split(".")
        value = self.config_data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    @property
    def log_level(self) -> str:
        return self.get("log_level", "INFO")

    @property
    def index_path(self) -> Path:
        path_str = self.get("index.path", "~/.codescope_index")
        return Path(path_str).expanduser().resolve()

    @property
    def lance_dir(self) -> Path:
        """Directory used by LanceDB, defaulting to ``index_path / "lancedb"``."""
        path_str = self.get("vector_index.path")
        if path_str:
            return Path(path_str).expanduser().resolve()
        return self.index_path / "lancedb"

    def embedding_settings(self) -> EmbeddingSettings:
        """Resolve the ``embeddings`` section; raises ConfigurationError when unusable."""
        return resolve_embedding_settings(self.get("embeddings", {}))

    def search_settings(self) -> SearchSettings:
        section = self.get("search", {}) or {}
        defaults = SearchSettings()
        values: Dict[str, Any] = {}
        for field_name in SearchSettings.__dataclass_fields__:
            if field_name not in section:
                continue
            current = getattr(defaults, field_name)
            try:
                values[field_name] = type(current)(section[field_name])
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid search.{field_name}: {exc}") from exc
        return SearchSettings(**values)

    def vector_index_settings(self) -> VectorIndexSettings:
        backend = str(self.get("vector_index.backend", "bruteforce")).lower()
        if backend not in VECTOR_BACKENDS:
            raise ConfigurationError(
                f"Unknown vector_index.backend {backend!r}; expected one of {VECTOR_BACKENDS}"
            )
        return VectorIndexSettings(
            backend=backend,
            path=self.lance_dir if backend == "lancedb" else None,
        )

    # --- Admin API configuration ---

    @property
    def admin_enabled(self) -> bool:
        return self.get("admin.enabled", True)

    @property
    def admin_api_key(self) -> Optional[str]:
        return self.get("admin.api_key")

    @property
    def admin_allowed_ips(self) -> list[str]:
        return self.get("admin.allowed_ips", ["127.0.0.1", "::1"])

    @property
    def admin_require_api_key(self) -> bool:
        return self.get("admin.require_api_key", False)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def load_config(config_path: Optional[Path] = None):
    """Load configuration from specified path."""
    global _config
    _config = Config(config_path)
    return _config
