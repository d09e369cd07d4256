"""
Configuration and settings for the media service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the API and the backfill script."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Database (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # Hosted project URL, used to derive public storage URLs
    supabase_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
    )

    # S3-compatible storage
    storage_endpoint: Optional[str] = Field(default=None)
    storage_region: Optional[str] = Field(default=None)
    storage_bucket: str = Field(default="images-public")
    storage_access_key_id: Optional[str] = Field(default=None)
    storage_secret_access_key: Optional[str] = Field(default=None)
    storage_public_base_url: Optional[str] = Field(default=None)

    site_url: str = Field(default="https://tibiavote.vercel.app")
    # Extra origins besides site_url
    allowed_origins: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:3001",
            "https://localhost:3000",
        ]
    )

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "TIBIAVOTE_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )

    import_fetch_timeout_seconds: float = Field(default=15.0)
    backfill_checkpoint_path: str = Field(default=".backfill-progress.json")

    @property
    def public_base_url(self) -> Optional[str]:
        """Prefix that turns a storage path into a public URL."""
        if self.storage_public_base_url:
            return self.storage_public_base_url.rstrip("/")
        if self.supabase_url:
            base = self.supabase_url.rstrip("/")
            return f"{base}/storage/v1/object/public/{self.storage_bucket}"
        return None

    @property
    def cors_origins(self) -> list[str]:
        """Origins allowed to call the API: the site itself first, then extras."""
        site = self.site_url.rstrip("/")
        return [site] + [origin for origin in self.allowed_origins if origin != site]

    @property
    def has_write_credentials(self) -> bool:
        return bool(
            self.database_url
            and self.storage_access_key_id
            and self.storage_secret_access_key
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
