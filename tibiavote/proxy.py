"""
Allow-listed image proxy for hotlink-protected wiki hosts.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlsplit

import httpx
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.responses import Response

logger = logging.getLogger(__name__)

ALLOWED_HOSTS = frozenset(
    {
        "static.wikia.nocookie.net",
        "static.wikia.nocookie.net.cdn.cloudflare.net",
        "static.wikia.nocookie.net.cdnfastly.net",
    }
)
ALLOWED_HOST_SUFFIX = ".fandom.com"

# Fandom wants a fandom referer/origin rather than the CDN host.
PROXY_HEADERS = {
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
    "Referer": "https://tibia.fandom.com/",
    "Origin": "https://tibia.fandom.com",
    "User-Agent": "Mozilla/5.0 (compatible; TibiaVoteBot/1.0; +https://tibiavote.vercel.app)",
}

PROXY_CACHE_CONTROL = "public, max-age=86400, s-maxage=86400, stale-while-revalidate=604800"
MAX_REDIRECTS = 5


class ProxyRejected(Exception):
    """A proxy request refused before contacting upstream."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def is_allowed_host(hostname: str) -> bool:
    hostname = hostname.lower()
    return hostname in ALLOWED_HOSTS or hostname.endswith(ALLOWED_HOST_SUFFIX)


def validate_target(url: Optional[str]) -> str:
    """Return the URL to fetch, or raise ProxyRejected with a 400/403."""
    if not url:
        raise ProxyRejected("Missing url", 400)
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError:
        raise ProxyRejected("Invalid url", 400)
    if not parts.scheme or not hostname:
        raise ProxyRejected("Invalid url", 400)
    if parts.scheme.lower() != "https":
        raise ProxyRejected("Only https is allowed", 400)
    if not is_allowed_host(hostname):
        raise ProxyRejected("Host not allowed", 403)
    return url


async def proxy_image(client: httpx.AsyncClient, url: Optional[str]) -> Response:
    try:
        target = validate_target(url)
    except ProxyRejected as exc:
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    # Redirects are followed by hand so every hop passes the allow-list.
    for _ in range(MAX_REDIRECTS + 1):
        try:
            request = client.build_request("GET", target, headers=PROXY_HEADERS)
            upstream = await client.send(request, stream=True, follow_redirects=False)
        except httpx.HTTPError as exc:
            logger.warning("Proxy fetch failed for %s: %s", target, exc)
            return PlainTextResponse("Proxy fetch failed", status_code=500)

        if not upstream.is_redirect:
            break

        location = upstream.headers["location"]
        await upstream.aclose()
        try:
            target = validate_target(str(upstream.url.join(location)))
        except httpx.InvalidURL:
            return PlainTextResponse("Invalid redirect", status_code=502)
        except ProxyRejected as exc:
            logger.warning("Blocked proxy redirect from %s to %s", upstream.url, location)
            return PlainTextResponse(exc.message, status_code=exc.status_code)
    else:
        return PlainTextResponse("Too many redirects", status_code=502)

    if not upstream.is_success:
        await upstream.aclose()
        return PlainTextResponse("Upstream error", status_code=upstream.status_code or 502)

    content_type = upstream.headers.get("content-type") or "image/png"
    if not content_type.lower().startswith("image/"):
        await upstream.aclose()
        return PlainTextResponse("Upstream is not an image", status_code=502)

    return StreamingResponse(
        upstream.aiter_bytes(),
        status_code=200,
        headers={
            "Content-Type": content_type,
            "Cache-Control": PROXY_CACHE_CONTROL,
        },
        background=BackgroundTask(upstream.aclose),
    )
