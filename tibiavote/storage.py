"""
Storage abstraction for the public image bucket (S3-compatible) and an
in-memory double for tests.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from tibiavote.config import Settings

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"

# Error codes S3-compatible services return when If-None-Match fails.
_EXISTS_ERROR_CODES = {
    "PreconditionFailed",
    "ConditionalRequestConflict",
    "KeyAlreadyExists",
    "Duplicate",
}


class StorageError(Exception):
    """Raised when the bucket rejects an operation."""


class StorageObjectExists(StorageError):
    """Raised when an upload targets a key that is already present."""


class StorageClient(Protocol):
    """Defines the operations the importer needs from object storage."""

    def upload_bytes(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str = IMMUTABLE_CACHE_CONTROL,
    ) -> None:
        ...

    def public_url(self, path: str) -> str:
        ...

    def ensure_bucket(self) -> None:
        ...


@dataclass
class StoredObject:
    data: bytes
    content_type: str
    cache_control: str


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage/v1/object/public/images-public"
    stored_objects: dict[str, StoredObject] = field(default_factory=dict)
    upload_calls: int = 0

    def __post_init__(self):
        self._lock = threading.Lock()

    def upload_bytes(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str = IMMUTABLE_CACHE_CONTROL,
    ) -> None:
        with self._lock:
            self.upload_calls += 1
            if path in self.stored_objects:
                raise StorageObjectExists(f"The resource already exists: {path}")
            self.stored_objects[path] = StoredObject(
                data=bytes(data),
                content_type=content_type,
                cache_control=cache_control,
            )

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def ensure_bucket(self) -> None:
        return None


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client (Supabase Storage, COS, MinIO, AWS).

    Uploads are conditional on the key being absent so concurrent writers of
    the same content hash cannot overwrite each other.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "S3StorageClient":
        return cls(
            bucket=settings.storage_bucket,
            region=settings.storage_region or "",
            endpoint=settings.storage_endpoint or "",
            access_key_id=settings.storage_access_key_id or "",
            secret_access_key=settings.storage_secret_access_key or "",
            public_base_url=settings.public_base_url,
        )

    def upload_bytes(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str = IMMUTABLE_CACHE_CONTROL,
    ) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                CacheControl=cache_control,
                IfNoneMatch="*",
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code in _EXISTS_ERROR_CODES or status in (409, 412):
                raise StorageObjectExists(path) from exc
            raise StorageError(f"Upload failed for {path}: {code or exc}") from exc

    def public_url(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{path}"
        if not self.endpoint:
            return f"https://{self.bucket}.s3.amazonaws.com/{path}"
        return f"{self.endpoint.rstrip('/')}/{self.bucket}/{path}"

    def ensure_bucket(self) -> None:
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise StorageError(f"Cannot access bucket {self.bucket}: {code}") from exc
        # Public read access is a bucket policy, configured outside this service.
        params = {"Bucket": self.bucket}
        if self.region and self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self._client.create_bucket(**params)
