"""
Helpers for media kinds, storage paths and display URLs.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional
from urllib.parse import quote

from tibiavote.db import MediaRecord
from tibiavote.storage import StorageClient

PROXY_PATH = "/api/img"


class MediaKind(str, Enum):
    WEAPON = "weapon"
    PERK_MAIN = "perk-main"
    PERK_TYPE = "perk-type"


def extension_for_content_type(content_type: Optional[str]) -> str:
    if not content_type:
        return "png"
    content_type = content_type.lower()
    if "png" in content_type:
        return "png"
    if "jpeg" in content_type or "jpg" in content_type:
        return "jpg"
    if "webp" in content_type:
        return "webp"
    if "gif" in content_type:
        return "gif"
    if "svg" in content_type:
        return "svg"
    return "png"


def build_storage_path(
    kind: MediaKind, sha256_hex: str, ext: str, slug_or_id: Optional[str] = None
) -> str:
    clean_ext = ext.lstrip(".")
    if kind == MediaKind.WEAPON:
        return f"weapons/{slug_or_id or 'unknown'}/{sha256_hex}.{clean_ext}"
    if kind == MediaKind.PERK_MAIN:
        return f"perks/main/{sha256_hex}.{clean_ext}"
    return f"perks/type/{sha256_hex}.{clean_ext}"


def resolve_image_url(
    storage: StorageClient,
    media: Optional[MediaRecord] = None,
    legacy_url: Optional[str] = None,
) -> Optional[str]:
    """Prefer the mirrored copy, fall back to the row's legacy URL."""
    if media and media.storage_path:
        return storage.public_url(media.storage_path)
    return legacy_url or None


def as_display_url(url: Optional[str], public_prefix: Optional[str]) -> Optional[str]:
    """
    Route external image URLs through the proxy.

    URLs that already point into the public bucket are returned unchanged.
    """
    if not url:
        return None
    if public_prefix and url.startswith(public_prefix.rstrip("/") + "/"):
        return url
    return f"{PROXY_PATH}?url={quote(url, safe='')}"


def display_image_url(
    storage: StorageClient,
    media: Optional[MediaRecord] = None,
    legacy_url: Optional[str] = None,
) -> Optional[str]:
    """URL a page should render for a row: the mirrored copy, else the proxied legacy URL."""
    url = resolve_image_url(storage, media, legacy_url)
    return as_display_url(url, storage.public_url("").rstrip("/"))
