"""
Pydantic schemas for the media API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class MediaImportRequest(BaseModel):
    # Validated in the route so missing fields answer 400 rather than 422.
    url: Optional[str] = Field(default=None, max_length=2048)
    kind: Optional[str] = None
    slugOrId: Optional[str] = Field(default=None, max_length=128)
    attribution: Optional[str] = Field(default=None, max_length=256)


class MediaImportResponse(BaseModel):
    id: str
    storage_path: str
    publicUrl: str
    reused: bool


class MediaResponse(BaseModel):
    id: str
    storage_path: str
    publicUrl: str
    source_url: Optional[str] = None
    format: Optional[str] = None
    bytes: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    attribution: Optional[str] = None


class HealthResponse(BaseModel):
    status: Literal["ok"]


class WeaponImageResponse(BaseModel):
    weaponId: str
    imageUrl: Optional[str] = None


class PerkImagesResponse(BaseModel):
    perkId: str
    mainIconUrl: Optional[str] = None
    typeIconUrl: Optional[str] = None
