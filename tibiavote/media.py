"""
Image importer: mirror externally hosted images into the public bucket.

An import fetches the source URL, validates type and size, hashes the bytes
and either reuses the media row that already holds that content or uploads
the bytes and records a new row. Content is addressed by its SHA-256, so any
number of source URLs pointing at the same picture end up sharing one object
and one row.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

from tibiavote.db import DbClient, DuplicateMediaError, MediaRecord
from tibiavote.images import MediaKind, build_storage_path, extension_for_content_type
from tibiavote.storage import IMMUTABLE_CACHE_CONTROL, StorageClient, StorageObjectExists

logger = logging.getLogger(__name__)

MAX_BYTES = 2 * 1024 * 1024  # 2 MiB
FETCH_TIMEOUT_SECONDS = 15.0

# Wiki CDNs check the referrer; prefer original formats over webp/avif.
FETCH_HEADERS = {
    "Accept": "image/png,image/jpeg,image/gif,image/svg+xml,image/*;q=0.8,*/*;q=0.5",
    "Referer": "https://tibia.fandom.com/",
    "Origin": "https://tibia.fandom.com",
    "User-Agent": "Mozilla/5.0 (compatible; ProficiencyBot/1.0; +https://proficiency.app)",
}


class MediaImportError(Exception):
    """
    Base class for import failures.

    ``status`` is the upstream status (``None`` when there was no response);
    ``http_status`` is what the API answers with.
    """

    http_status = 500

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class UpstreamError(MediaImportError):
    http_status = 502


class NotAnImage(MediaImportError):
    http_status = 415

    def __init__(self, message: str = "Not an image"):
        super().__init__(message, status=415)


class PayloadTooLarge(MediaImportError):
    http_status = 413

    def __init__(self, message: str = "Image too large"):
        super().__init__(message, status=413)


@dataclass
class FetchedImage:
    data: bytes
    content_type: str


@dataclass
class ImportResult:
    id: str
    storage_path: str
    public_url: str
    reused: bool


async def fetch_image(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout: Optional[float] = FETCH_TIMEOUT_SECONDS,
    max_bytes: int = MAX_BYTES,
) -> FetchedImage:
    """
    Download an image, enforcing the content-type and size limits.

    Args:
        client: shared HTTP client.
        url: absolute source URL.
        timeout: overall timeout in seconds, ``None`` to wait indefinitely.
        max_bytes: byte ceiling checked against Content-Length and the body.

    Raises:
        UpstreamError: on transport failure or a non-2xx response.
        NotAnImage: if the response is not ``image/*``.
        PayloadTooLarge: if the image exceeds ``max_bytes``.
    """
    try:
        async with client.stream(
            "GET",
            url,
            headers=FETCH_HEADERS,
            timeout=timeout,
            follow_redirects=True,
        ) as response:
            if not response.is_success:
                raise UpstreamError(
                    f"Upstream error: {response.status_code}",
                    status=response.status_code,
                )

            content_type = response.headers.get("content-type") or "application/octet-stream"
            if not content_type.lower().startswith("image/"):
                raise NotAnImage()

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > max_bytes:
                raise PayloadTooLarge()

            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise PayloadTooLarge()
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise UpstreamError(f"Upstream fetch failed: {exc}") from exc

    return FetchedImage(data=bytes(body), content_type=content_type)


def read_dimensions(data: bytes) -> tuple[Optional[int], Optional[int]]:
    """Return (width, height) for raster images, (None, None) otherwise."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            return width, height
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError):
        return None, None


class MediaImporter:
    """Fetch, dedupe, store and record images."""

    def __init__(
        self,
        db: DbClient,
        storage: StorageClient,
        http_client: httpx.AsyncClient,
        *,
        timeout: Optional[float] = FETCH_TIMEOUT_SECONDS,
        max_bytes: int = MAX_BYTES,
    ):
        self.db = db
        self.storage = storage
        self.http_client = http_client
        self.timeout = timeout
        self.max_bytes = max_bytes

    def _result(self, record: MediaRecord, *, reused: bool) -> ImportResult:
        return ImportResult(
            id=record.id,
            storage_path=record.storage_path,
            public_url=self.storage.public_url(record.storage_path),
            reused=reused,
        )

    async def import_image(
        self,
        url: str,
        kind: MediaKind | str,
        *,
        slug_or_id: Optional[str] = None,
        attribution: Optional[str] = None,
    ) -> ImportResult:
        kind = MediaKind(kind)
        fetched = await fetch_image(
            self.http_client, url, timeout=self.timeout, max_bytes=self.max_bytes
        )

        digest = hashlib.sha256(fetched.data).digest()
        sha_hex = digest.hex()

        existing = await asyncio.to_thread(self.db.get_media_by_sha, digest)
        if existing:
            logger.info("Reusing media %s for %s", existing.id, url)
            return self._result(existing, reused=True)

        ext = extension_for_content_type(fetched.content_type)
        storage_path = build_storage_path(kind, sha_hex, ext, slug_or_id)
        try:
            await asyncio.to_thread(
                self.storage.upload_bytes,
                storage_path,
                fetched.data,
                content_type=fetched.content_type,
                cache_control=IMMUTABLE_CACHE_CONTROL,
            )
        except StorageObjectExists:
            # Another worker uploaded the same content first.
            logger.debug("Object %s already exists", storage_path)

        width, height = read_dimensions(fetched.data)
        record = MediaRecord(
            source_url=url,
            storage_path=storage_path,
            format=ext,
            bytes=len(fetched.data),
            width=width,
            height=height,
            sha256=digest,
            attribution=attribution or None,
        )
        try:
            inserted = await asyncio.to_thread(self.db.insert_media, record)
        except DuplicateMediaError:
            again = await asyncio.to_thread(self.db.get_media_by_sha, digest)
            if again is None:
                raise
            logger.info("Lost insert race for %s, reusing media %s", sha_hex, again.id)
            return self._result(again, reused=True)

        logger.info("Imported %s as %s (%d bytes)", url, storage_path, record.bytes)
        return self._result(inserted, reused=False)
