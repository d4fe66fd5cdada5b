"""S3-compatible object storage gateway.

Wraps a boto3 S3 client (AWS, Cloudflare R2, MinIO) with the operations the
pitch pipeline needs: presigned PUT/GET URLs, multipart uploads, downloads,
single and prefix deletion. boto3 is blocking, so every public method is a
coroutine that runs the client call in a worker thread.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import unquote, urlparse

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from pitchstream.core.config import settings

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".key": "application/octet-stream",
    ".mp4": "video/mp4",
    ".m4s": "video/iso.segment",
}

KEY_CACHE_CONTROL = "private, max-age=0, no-cache"
ASSET_CACHE_CONTROL = "public, max-age=31536000, immutable"

# S3 DeleteObjects accepts at most this many keys per call
DELETE_BATCH_SIZE = 1000


class StorageError(Exception):
    """Raised when an object storage operation fails."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


def content_type_for(name: str) -> str:
    """Map a file or key name to the content type stored with the object."""
    ext = os.path.splitext(name)[1].lower()
    return CONTENT_TYPES.get(ext, "application/octet-stream")


def cache_control_for(name: str) -> str:
    return KEY_CACHE_CONTROL if name.lower().endswith(".key") else ASSET_CACHE_CONTROL


@dataclass
class StorageConfig:
    """Storage configuration."""
    bucket: str
    region: str = "auto"
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    public_base_url: Optional[str] = None
    multipart_chunk_size: int = 8 * 1024 * 1024
    multipart_concurrency: int = 8
    directory_upload_concurrency: int = 6

    @classmethod
    def from_settings(cls) -> "StorageConfig":
        return cls(
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            public_base_url=settings.STORAGE_PUBLIC_BASE_URL,
            multipart_chunk_size=settings.STORAGE_MULTIPART_CHUNK_SIZE,
            multipart_concurrency=settings.STORAGE_MULTIPART_CONCURRENCY,
            directory_upload_concurrency=settings.STORAGE_HLS_UPLOAD_CONCURRENCY,
        )


@dataclass
class StorageResult:
    """Result of an upload."""
    key: str
    url: str
    file_size: int = 0


@dataclass
class PresignedUpload:
    """A presigned PUT bound to one key and content type."""
    upload_url: str
    key: str
    bucket: str


class ObjectStorage:
    """Object storage gateway backed by boto3."""

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self._client = client

    @property
    def bucket(self) -> str:
        return self.config.bucket

    def _get_client(self):
        """Get or create the S3 client."""
        if self._client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "auto",
                "config": BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                ),
            }
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
            if self.config.access_key and self.config.secret_key:
                client_kwargs["aws_access_key_id"] = self.config.access_key
                client_kwargs["aws_secret_access_key"] = self.config.secret_key
            self._client = boto3.client(**client_kwargs)
        return self._client

    # ------------------------------------------------------------------
    # URL helpers
    # ------------------------------------------------------------------

    def public_url(self, key: str) -> str:
        """Stable, unsigned URL recorded for an object."""
        key = key.lstrip("/")
        if self.config.public_base_url:
            return f"{self.config.public_base_url.rstrip('/')}/{key}"
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.config.region}.amazonaws.com/{key}"

    def key_from_url(self, url: str) -> str:
        """Recover the object key from a URL produced by :meth:`public_url`."""
        if self.config.public_base_url:
            base = self.config.public_base_url.rstrip("/") + "/"
            if url.startswith(base):
                return unquote(url[len(base):])

        path = unquote(urlparse(url).path).lstrip("/")
        bucket_prefix = f"{self.bucket}/"
        if path.startswith(bucket_prefix):
            return path[len(bucket_prefix):]
        return path

    # ------------------------------------------------------------------
    # Presigning
    # ------------------------------------------------------------------

    def _presign(self, operation: str, params: dict, expires_in: int) -> str:
        try:
            return self._get_client().generate_presigned_url(
                operation,
                Params={"Bucket": self.bucket, **params},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to presign {operation}: {e}", key=params.get("Key")) from e

    async def presign_upload(
        self,
        key: str,
        content_type: str,
        expires_in: int = settings.STORAGE_UPLOAD_URL_EXPIRES,
    ) -> PresignedUpload:
        """Presigned PUT bound to ``key`` and ``content_type``."""
        url = await asyncio.to_thread(
            self._presign,
            "put_object",
            {"Key": key, "ContentType": content_type},
            expires_in,
        )
        return PresignedUpload(upload_url=url, key=key, bucket=self.bucket)

    async def presign_download(
        self,
        key: str,
        expires_in: int = settings.STORAGE_DOWNLOAD_URL_EXPIRES,
    ) -> str:
        """Presigned GET for ``key``."""
        return await asyncio.to_thread(self._presign, "get_object", {"Key": key}, expires_in)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def _upload_file_sync(self, file_path: str, key: str) -> StorageResult:
        transfer_config = TransferConfig(
            multipart_threshold=self.config.multipart_chunk_size,
            multipart_chunksize=self.config.multipart_chunk_size,
            max_concurrency=self.config.multipart_concurrency,
        )
        try:
            self._get_client().upload_file(
                file_path,
                self.bucket,
                key,
                ExtraArgs={
                    "ContentType": content_type_for(key),
                    "CacheControl": cache_control_for(key),
                },
                Config=transfer_config,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload {file_path}: {e}", key=key) from e

        return StorageResult(
            key=key,
            url=self.public_url(key),
            file_size=os.path.getsize(file_path),
        )

    async def upload_file(self, file_path: str, key: str) -> StorageResult:
        """Upload a local file, switching to multipart above the chunk size."""
        return await asyncio.to_thread(self._upload_file_sync, file_path, key)

    async def upload_directory(
        self,
        local_dir: str,
        prefix: str,
        skip_suffixes: Iterable[str] = (".info",),
    ) -> dict[str, str]:
        """Upload every regular file in ``local_dir`` under ``prefix``.

        Returns:
            Mapping of file name to the uploaded object's URL.
        """
        skip = tuple(skip_suffixes)
        names = sorted(
            entry.name
            for entry in os.scandir(local_dir)
            if entry.is_file() and not entry.name.endswith(skip)
        )
        prefix = prefix.rstrip("/")
        semaphore = asyncio.Semaphore(max(1, min(self.config.directory_upload_concurrency, len(names) or 1)))

        async def _upload(name: str) -> tuple[str, str]:
            async with semaphore:
                result = await self.upload_file(os.path.join(local_dir, name), f"{prefix}/{name}")
                return name, result.url

        uploaded = await asyncio.gather(*(_upload(name) for name in names))
        return dict(uploaded)

    def _download_sync(self, key: str, destination: str) -> str:
        os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
        try:
            self._get_client().download_file(self.bucket, key, destination)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to download {key}: {e}", key=key) from e
        return destination

    async def download_to_file(self, key: str, destination: str) -> str:
        """Download ``key`` to a local path, creating parent directories."""
        return await asyncio.to_thread(self._download_sync, key, destination)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def _delete_sync(self, key: str) -> None:
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete {key}: {e}", key=key) from e

    async def delete(self, key: str) -> None:
        if not key:
            return
        await asyncio.to_thread(self._delete_sync, key)

    def _delete_prefix_sync(self, prefix: str) -> int:
        client = self._get_client()
        deleted = 0
        try:
            paginator = client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys = [obj["Key"] for obj in page.get("Contents", [])]
                for start in range(0, len(keys), DELETE_BATCH_SIZE):
                    batch = keys[start:start + DELETE_BATCH_SIZE]
                    client.delete_objects(
                        Bucket=self.bucket,
                        Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                    )
                    deleted += len(batch)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete prefix {prefix}: {e}", key=prefix) from e
        return deleted

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under ``prefix``; returns the number removed."""
        if not prefix:
            raise StorageError("Refusing to delete an empty prefix")
        count = await asyncio.to_thread(self._delete_prefix_sync, prefix)
        logger.info(f"Deleted {count} objects under {prefix}")
        return count


_storage: Optional[ObjectStorage] = None


def get_storage() -> ObjectStorage:
    """Get the process-wide storage gateway."""
    global _storage
    if _storage is None:
        _storage = ObjectStorage(StorageConfig.from_settings())
    return _storage
