"""
HTTP routes for the media API.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError

from tibiavote import proxy
from tibiavote.db import DbClient, DuplicateMediaError
from tibiavote.dependencies import (
    get_db_client,
    get_http_client,
    get_media_importer,
    get_storage_client,
)
from tibiavote.images import MediaKind, display_image_url
from tibiavote.media import MediaImportError, MediaImporter
from tibiavote.schemas import (
    HealthResponse,
    MediaImportRequest,
    MediaImportResponse,
    MediaResponse,
    PerkImagesResponse,
    WeaponImageResponse,
)
from tibiavote.storage import StorageClient, StorageError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok")


@router.post("/media/import", response_model=MediaImportResponse)
async def import_media(
    payload: MediaImportRequest,
    importer: MediaImporter = Depends(get_media_importer),
):
    """
    Mirror an external image into storage, reusing identical content.
    """
    if not payload.url or not payload.kind:
        raise HTTPException(status_code=400, detail="Missing url or kind")
    try:
        kind = MediaKind(payload.kind)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown kind: {payload.kind}")

    try:
        result = await importer.import_image(
            payload.url,
            kind,
            slug_or_id=payload.slugOrId,
            attribution=payload.attribution,
        )
    except MediaImportError as exc:
        logger.info("Import of %s rejected: %s", payload.url, exc)
        raise HTTPException(status_code=exc.http_status, detail=str(exc))
    except StorageError as exc:
        logger.error("Upload failed for %s: %s", payload.url, exc)
        raise HTTPException(status_code=500, detail=f"Upload failed: {exc}")
    except DuplicateMediaError:
        raise HTTPException(status_code=500, detail="Insert failed")
    except SQLAlchemyError:
        logger.exception("Database error importing %s", payload.url)
        raise HTTPException(status_code=500, detail="DB error")

    return MediaImportResponse(
        id=result.id,
        storage_path=result.storage_path,
        publicUrl=result.public_url,
        reused=result.reused,
    )


@router.get("/media/{media_id}", response_model=MediaResponse)
def get_media(
    media_id: str,
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    record = db.get_media(media_id)
    if not record:
        raise HTTPException(status_code=404, detail="Media not found")
    return MediaResponse(
        id=record.id,
        storage_path=record.storage_path,
        publicUrl=storage.public_url(record.storage_path),
        source_url=record.source_url,
        format=record.format,
        bytes=record.bytes,
        width=record.width,
        height=record.height,
        attribution=record.attribution,
    )


def _media_or_none(db: DbClient, media_id: Optional[str]):
    return db.get_media(media_id) if media_id else None


@router.get("/weapons/{weapon_id}/image", response_model=WeaponImageResponse)
def weapon_image(
    weapon_id: str,
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    weapon = db.get_weapon(weapon_id)
    if not weapon:
        raise HTTPException(status_code=404, detail="Weapon not found")
    media = _media_or_none(db, weapon.image_media_id)
    return WeaponImageResponse(
        weaponId=weapon.id,
        imageUrl=display_image_url(storage, media, weapon.image_url),
    )


@router.get("/perks/{perk_id}/images", response_model=PerkImagesResponse)
def perk_images(
    perk_id: str,
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    perk = db.get_perk(perk_id)
    if not perk:
        raise HTTPException(status_code=404, detail="Perk not found")
    return PerkImagesResponse(
        perkId=perk.id,
        mainIconUrl=display_image_url(
            storage, _media_or_none(db, perk.main_media_id), perk.main_icon_url
        ),
        typeIconUrl=display_image_url(
            storage, _media_or_none(db, perk.type_media_id), perk.type_icon_url
        ),
    )


@router.get("/img")
async def proxy_image(
    url: Optional[str] = Query(None, description="Absolute https image URL"),
    http_client: httpx.AsyncClient = Depends(get_http_client),
):
    return await proxy.proxy_image(http_client, url)
