# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .config import Config
from .errors import ProviderError
from .indexer import CodeIndex, SearchOptions
from .middleware.header_logging import HeaderLoggingASGIMiddleware

logger = logging.getLogger("codescope.admin")


def _admin_cfg_from(config: Optional[Config]) -> Dict[str, Any]:
    if config is None:
        return {
            "enabled": True,
            "api_key": None,
            "require_api_key": False,
            "allowed_ips": ["127.0.0.1", "::1"],
        }
    return {
        "enabled": config.admin_enabled,
        "api_key": config.admin_api_key,
        "require_api_key": config.admin_require_api_key,
        "allowed_ips": config.admin_allowed_ips,
    }


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _internal_error(name: str, exc: Exception) -> JSONResponse:
    logger.exception("%s failed: %s", name, exc)
    return JSONResponse({"error": "internal_error", "detail": str(exc)}, status_code=500)


async def require_admin(request: Request) -> Optional[JSONResponse]:
    """
    Common gate for all admin endpoints.

    - Refuse everything when admin.enabled is false
    - Enforce the IP allow-list (admin.allowed_ips)
    - Enforce X-Admin-Key header if admin.api_key is set
    """
    cfg = request.app.state.admin_cfg
    client = request.client
    client_ip = client.host if client else None

    if not cfg.get("enabled", True):
        logger.warning("Admin API called but admin.enabled=false")
        return JSONResponse({"error": "admin_disabled"}, status_code=503)

    allowed = set(cfg.get("allowed_ips") or ["127.0.0.1", "::1"])
    if client_ip not in allowed:
        logger.warning("Admin access denied from IP %r", client_ip)
        return JSONResponse(
            {"error": "forbidden", "reason": "ip_not_allowed"},
            status_code=403,
        )

    api_key = cfg.get("api_key")
    if cfg.get("require_api_key") and not api_key:
        logger.error("admin.require_api_key is set but no admin.api_key is configured")
        return JSONResponse(
            {"error": "configuration_error", "detail": "admin API key required but not set"},
            status_code=503,
        )
    if api_key and request.headers.get("x-admin-key") != api_key:
        logger.warning("Admin access denied due to invalid API key")
        return JSONResponse({"error": "unauthorized"}, status_code=401)

    return None


async def admin_status(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    index: CodeIndex = request.app.state.index
    cfg = request.app.state.admin_cfg
    payload: Dict[str, Any] = {
        "admin": {"enabled": cfg.get("enabled", True)},
        "index": {
            "path": str(index.index_path),
            "schema_version": index.store.schema_version,
            "files": len(index.trigrams),
        },
        "embeddings": index.embeddings.provider.describe(),
    }
    return JSONResponse(payload)


async def admin_search(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    params = request.query_params
    query = params.get("q")
    if not query:
        return JSONResponse({"error": "bad_request", "detail": "q is required"}, status_code=400)
    try:
        max_results = int(params["max_results"]) if "max_results" in params else None
        snippet_length = int(params["snippet_length"]) if "snippet_length" in params else None
    except ValueError as exc:
        return JSONResponse({"error": "bad_request", "detail": str(exc)}, status_code=400)

    file_types = [t for t in params.get("file_types", "").split(",") if t.strip()]
    options = SearchOptions(
        file_types=file_types or None,
        deduplicate_by_content=_flag(params.get("dedupe")),
        group_by_file=_flag(params.get("group_by_file")),
        snippet_length=snippet_length,
        max_results=max_results,
        semantic=_flag(params.get("semantic"), default=True),
        save_evidence=_flag(params.get("save_evidence")),
    )
    try:
        result = await request.app.state.index.search(query, options)
        return JSONResponse(result.to_dict())
    except Exception as exc:
        return _internal_error("admin_search", exc)


async def admin_index_stats(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp
    try:
        return JSONResponse(request.app.state.index.get_index_stats())
    except Exception as exc:
        return _internal_error("admin_index_stats", exc)


async def admin_vector_rebuild(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    body = await request.json() if await request.body() else {}
    try:
        result = request.app.state.index.rebuild_vector_index(
            body.get("provider"), body.get("model")
        )
        return JSONResponse(result)
    except Exception as exc:
        return _internal_error("admin_vector_rebuild", exc)


async def admin_embeddings_run(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    body = await request.json() if await request.body() else {}
    limit = body.get("limit")
    try:
        result = await request.app.state.index.embed_pending_chunks(
            int(limit) if limit is not None else None
        )
        return JSONResponse(result)
    except ProviderError as exc:
        logger.error("Embedding provider failed: %s", exc)
        return JSONResponse(
            {"error": "provider_error", "status": exc.status, "detail": exc.body},
            status_code=502,
        )
    except Exception as exc:
        return _internal_error("admin_embeddings_run", exc)


async def admin_audit_prune(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp
    store = request.app.state.index.store
    try:
        return JSONResponse(
            {
                "audit_pruned": store.prune_audit_log(),
                "evidence_pruned": store.prune_evidence_packs(),
            }
        )
    except Exception as exc:
        return _internal_error("admin_audit_prune", exc)


async def admin_evidence(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp
    pack = request.app.state.index.store.load_evidence_pack(request.path_params["pack_id"])
    if pack is None:
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse(pack)


routes = [
    Route("/admin/status", admin_status, methods=["GET"]),
    Route("/admin/search", admin_search, methods=["GET"]),
    Route("/admin/index/stats", admin_index_stats, methods=["GET"]),
    Route("/admin/vector/rebuild", admin_vector_rebuild, methods=["POST"]),
    Route("/admin/embeddings/run", admin_embeddings_run, methods=["POST"]),
    Route("/admin/audit/prune", admin_audit_prune, methods=["POST"]),
    Route("/admin/evidence/{pack_id}", admin_evidence, methods=["GET"]),
]


def create_app(index: CodeIndex, config: Optional[Config] = None) -> Starlette:
    app = Starlette(
        debug=False,
        routes=routes,
        middleware=[
            Middleware(HeaderLoggingASGIMiddleware),
            Middleware(
                CORSMiddleware,
                allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
                allow_credentials=False,
                allow_methods=["GET", "POST", "OPTIONS"],
                allow_headers=["*"],
            ),
        ],
    )
    app.state.index = index
    app.state.admin_cfg = _admin_cfg_from(config)
    return app
