"""
Origin checks, CORS and security headers for every request.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional
from urllib.parse import urlsplit

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "origin-when-cross-origin",
    "X-XSS-Protection": "1; mode=block",
}

_DEFAULT_PORTS = {"http": 80, "https": 443}


def origin_of(url: str) -> Optional[str]:
    """Return ``scheme://host[:port]`` for a URL, dropping userinfo and default ports."""
    try:
        parts = urlsplit(url)
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not host:
        return None
    scheme = parts.scheme.lower()
    if ":" in host:
        host = f"[{host}]"
    if port is None or port == _DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def _under_prefix(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


def _forbidden(message: str) -> Response:
    return PlainTextResponse(f"Forbidden: {message}", status_code=403)


def install_request_guard(app: FastAPI, allowed_origins: Iterable[str], api_prefix: str) -> None:
    """
    Install CORS handling and the origin/referer guard.

    The guard is added last so it wraps CORSMiddleware: unknown origins are
    refused before any CORS processing and every response, preflights
    included, gets the security headers.
    """
    allowed = frozenset(allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=sorted(allowed),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )

    @app.middleware("http")
    async def request_guard(request: Request, call_next):
        origin = request.headers.get("origin")
        referer = request.headers.get("referer")

        if origin and origin not in allowed:
            logger.warning("Blocked request from unauthorized origin: %s", origin)
            return _forbidden("Unauthorized origin")

        if referer and _under_prefix(request.url.path, api_prefix):
            referer_origin = origin_of(referer)
            if referer_origin not in allowed:
                logger.warning("Blocked API request from unauthorized referer: %s", referer)
                return _forbidden("Unauthorized referer")

        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        return response
