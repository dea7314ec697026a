# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

from __future__ import annotations

import logging
import time
import uuid

logger = logging.getLogger("codescope.http")

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "x-api-key",
    "x-admin-key",
}


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Return a copy of headers with sensitive keys redacted."""

    redacted: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_HEADERS:
            redacted[key] = "<redacted>"
        else:
            redacted[key] = value
    return redacted


def redact_querystring(path: str) -> str:
    """Redact query parameters that may contain secrets."""
    if "?" not in path:
        return path
    base, _qs = path.split("?", 1)
    return f"{base}?<redacted>"


class HeaderLoggingASGIMiddleware:
    """
    ASGI middleware that logs each admin request and its status code and duration.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        request_id = str(uuid.uuid4())

        headers_dict: dict[str, str] = {}
        for raw_name, raw_value in scope.get("headers", []):
            headers_dict[raw_name.decode("latin-1")] = raw_value.decode("latin-1")

        path = scope.get("path", "")
        if scope.get("query_string"):
            path = redact_querystring(f"{path}?{scope['query_string'].decode('latin-1')}")
        method = scope.get("method", "UNKNOWN")

        client = scope.get("client")
        client_ip = client[0] if client and isinstance(client, (tuple, list)) else None

        logger.info(
            "Incoming admin HTTP request",
            extra={
                "request_id": request_id,
                "method": method,
                "path": path,
                "client_ip": client_ip,
                "headers": redact_headers(headers_dict),
            },
        )

        status_code_holder = {"value": None}

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status_code_holder["value"] = message.get("status", None)
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode("latin-1")))
                headers.append((b"cache-control", b"no-store"))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            logger.exception(
                "Error handling admin request",
                extra={
                    "request_id": request_id,
                    "duration_ms": int((time.perf_counter() - start_time) * 1000),
                    "path": path,
                    "method": method,
                },
            )
            raise

        logger.info(
            "Outgoing admin HTTP response",
            extra={
                "request_id": request_id,
                "status_code": status_code_holder["value"],
                "duration_ms": int((time.perf_counter() - start_time) * 1000),
                "path": path,
                "method": method,
            },
        )
