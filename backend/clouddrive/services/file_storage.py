"""Blob storage abstraction. Local filesystem for dev, MinIO for production."""
import asyncio
import io
import logging
import os
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from urllib.parse import urlencode

import aiofiles

from clouddrive.config import settings

logger = logging.getLogger(__name__)


class BlobNotFoundError(LookupError):
    def __init__(self, bucket: str, blob_id: str):
        super().__init__(f"Blob {bucket}/{blob_id} not found")
        self.bucket = bucket
        self.blob_id = blob_id


class BlobStore(ABC):
    """Binary object storage keyed by a caller-generated id."""

    @abstractmethod
    async def put(self, bucket: str, blob_id: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store bytes. Returns the blob id."""
        pass

    @abstractmethod
    async def get(self, bucket: str, blob_id: str) -> bytes:
        pass

    @abstractmethod
    async def delete(self, bucket: str, blob_id: str) -> None:
        """Delete a blob. Deleting a missing blob is not an error."""
        pass

    @abstractmethod
    async def list_ids(self, bucket: str) -> list[str]:
        pass

    @abstractmethod
    def get_download_url(self, bucket: str, blob_id: str) -> str:
        pass

    @abstractmethod
    def get_preview_url(self, bucket: str, blob_id: str, width: int = 400, height: int = 400, quality: int = 100) -> str:
        pass


def _preview_query(width: int, height: int, quality: int) -> str:
    return urlencode({"width": width, "height": height, "quality": quality})


class LocalBlobStore(BlobStore):
    """Handles blob read/write on local disk, one directory per bucket."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, bucket: str, blob_id: str) -> Path:
        if "/" in blob_id or "\\" in blob_id or blob_id in ("", ".", ".."):
            raise ValueError(f"Invalid blob id: {blob_id!r}")
        return self.base_path / bucket / blob_id

    async def put(self, bucket, blob_id, data, content_type="application/octet-stream"):
        path = self._path(bucket, blob_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        return blob_id

    async def get(self, bucket, blob_id):
        path = self._path(bucket, blob_id)
        if not path.exists():
            raise BlobNotFoundError(bucket, blob_id)
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def delete(self, bucket, blob_id):
        path = self._path(bucket, blob_id)
        if path.exists():
            os.remove(path)

    async def list_ids(self, bucket):
        directory = self.base_path / bucket
        if not directory.exists():
            return []
        return sorted(p.name for p in directory.iterdir() if p.is_file())

    def get_download_url(self, bucket, blob_id):
        return self._path(bucket, blob_id).resolve().as_uri()

    def get_preview_url(self, bucket, blob_id, width=400, height=400, quality=100):
        return f"{self.get_download_url(bucket, blob_id)}?{_preview_query(width, height, quality)}"


class MinIOBlobStore(BlobStore):
    """S3-compatible object storage. The minio client is sync, so calls run in a thread."""

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        secure: bool = False,
        public_endpoint: str = "",
    ):
        from minio import Minio

        self.client = Minio(
            endpoint,
            access_key=access_key,
            secret_key=secret_key,
            secure=secure,
            region="us-east-1",  # explicit region avoids a lookup request
        )
        # Presigning is local-only; the public endpoint makes signatures match browser requests.
        self.presign_client = Minio(
            public_endpoint or endpoint,
            access_key=access_key,
            secret_key=secret_key,
            secure=secure,
            region="us-east-1",
        )
        self._known_buckets: set[str] = set()

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._known_buckets:
            return
        if not self.client.bucket_exists(bucket):
            self.client.make_bucket(bucket)
        self._known_buckets.add(bucket)

    def _sync_put(self, bucket, blob_id, data, content_type):
        self._ensure_bucket(bucket)
        self.client.put_object(
            bucket, blob_id, io.BytesIO(data), length=len(data), content_type=content_type,
        )
        return blob_id

    def _sync_get(self, bucket, blob_id):
        from minio.error import S3Error

        try:
            response = self.client.get_object(bucket, blob_id)
        except S3Error as exc:
            if exc.code in ("NoSuchKey", "NoSuchBucket"):
                raise BlobNotFoundError(bucket, blob_id) from exc
            raise
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def _sync_list_ids(self, bucket):
        if not self.client.bucket_exists(bucket):
            return []
        return sorted(obj.object_name for obj in self.client.list_objects(bucket))

    async def put(self, bucket, blob_id, data, content_type="application/octet-stream"):
        return await asyncio.to_thread(self._sync_put, bucket, blob_id, data, content_type)

    async def get(self, bucket, blob_id):
        return await asyncio.to_thread(self._sync_get, bucket, blob_id)

    async def delete(self, bucket, blob_id):
        # remove_object succeeds for missing keys
        await asyncio.to_thread(self.client.remove_object, bucket, blob_id)

    async def list_ids(self, bucket):
        return await asyncio.to_thread(self._sync_list_ids, bucket)

    def get_download_url(self, bucket, blob_id, expires: int = 3600):
        return self.presign_client.presigned_get_object(
            bucket, blob_id, expires=timedelta(seconds=expires),
        )

    def get_preview_url(self, bucket, blob_id, width=400, height=400, quality=100):
        return self.presign_client.presigned_get_object(
            bucket, blob_id,
            expires=timedelta(hours=1),
            extra_query_params={
                "width": str(width), "height": str(height), "quality": str(quality),
            },
        )


class InMemoryBlobStore(BlobStore):
    """Keeps blobs in a dict. Used by tests and the ``memory`` storage type."""

    def __init__(self):
        self._blobs: dict[tuple[str, str], bytes] = {}

    async def put(self, bucket, blob_id, data, content_type="application/octet-stream"):
        self._blobs[(bucket, blob_id)] = bytes(data)
        return blob_id

    async def get(self, bucket, blob_id):
        try:
            return self._blobs[(bucket, blob_id)]
        except KeyError:
            raise BlobNotFoundError(bucket, blob_id) from None

    async def delete(self, bucket, blob_id):
        self._blobs.pop((bucket, blob_id), None)

    async def list_ids(self, bucket):
        return sorted(blob_id for (b, blob_id) in self._blobs if b == bucket)

    def get_download_url(self, bucket, blob_id):
        return f"memory://{bucket}/{blob_id}"

    def get_preview_url(self, bucket, blob_id, width=400, height=400, quality=100):
        return f"memory://{bucket}/{blob_id}?{_preview_query(width, height, quality)}"


def create_blob_store() -> BlobStore:
    """Build the blob store selected by FILE_STORAGE_TYPE."""
    if settings.FILE_STORAGE_TYPE == "local":
        return LocalBlobStore(settings.FILE_STORAGE_PATH)
    if settings.FILE_STORAGE_TYPE == "minio":
        return MinIOBlobStore(
            settings.MINIO_ENDPOINT,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=settings.MINIO_SECURE,
            public_endpoint=settings.MINIO_PUBLIC_ENDPOINT,
        )
    if settings.FILE_STORAGE_TYPE == "memory":
        return InMemoryBlobStore()
    raise ValueError(f"Unknown storage type: {settings.FILE_STORAGE_TYPE}")
