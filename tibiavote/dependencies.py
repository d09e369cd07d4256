"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from http.cookiejar import CookieJar, DefaultCookiePolicy

import httpx
from fastapi import Depends

from tibiavote.config import get_settings
from tibiavote.db import DbClient, InMemoryDbClient, PostgresDbClient
from tibiavote.media import FETCH_TIMEOUT_SECONDS, MediaImporter
from tibiavote.storage import InMemoryStorageClient, S3StorageClient, StorageClient

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None
_http_client: httpx.AsyncClient | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client shared across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.storage_access_key_id:
        _storage_client = InMemoryStorageClient(
            base_url=settings.public_base_url or InMemoryStorageClient.base_url
        )
    else:
        _storage_client = S3StorageClient.from_settings(settings)
    return _storage_client


def get_http_client() -> httpx.AsyncClient:
    """
    Return the shared outbound HTTP client. Its cookie jar rejects every
    cookie so nothing is forwarded between upstream requests.
    """
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(FETCH_TIMEOUT_SECONDS),
            cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def get_media_importer(
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> MediaImporter:
    settings = get_settings()
    return MediaImporter(
        db,
        storage,
        http_client,
        timeout=settings.import_fetch_timeout_seconds,
    )
