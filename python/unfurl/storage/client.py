"""Blob storage for re-hosted preview images.

Objects are written once per (url_hash, variant) and replaced only when a
preview is refreshed. The API streams them back through the access gate,
so the bucket itself stays private.

Implementations:
- StorageClient: Supabase Storage REST API over httpx
- FakeStorageClient: in-memory, for local development and tests
"""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache

import httpx

from unfurl.config import get_settings
from unfurl.logging import get_logger

logger = get_logger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024

# Variants are immutable per path until the preview is refetched
OBJECT_CACHE_CONTROL = "max-age=3600"


@dataclass(frozen=True)
class ObjectMetadata:
    content_type: str
    size_bytes: int


class StorageError(Exception):
    """Storage operation error."""

    def __init__(self, message: str, code: str = "E_STORAGE_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


class StorageClientBase(ABC):
    """Operations the pipeline, the sweeper and the image route rely on."""

    @abstractmethod
    def put_object(self, path: str, content: bytes, content_type: str) -> None:
        """Write an object, replacing whatever is stored at `path`.

        Raises:
            StorageError: If the write fails.
        """

    @abstractmethod
    def head_object(self, path: str) -> ObjectMetadata | None:
        """Metadata of an existing object, None when absent."""

    @abstractmethod
    def stream_object(self, path: str) -> Iterator[bytes]:
        """Yield object content in chunks.

        Raises:
            StorageError: E_STORAGE_MISSING if the object is gone.
        """

    @abstractmethod
    def delete_object(self, path: str) -> None:
        """Delete an object. Best-effort: failures are logged, not raised."""


class StorageClient(StorageClientBase):
    """Supabase Storage client for one private bucket."""

    def __init__(
        self,
        supabase_url: str,
        service_key: str,
        bucket: str = "link-previews",
        timeout_s: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._object_base = f"{supabase_url.rstrip('/')}/storage/v1/object/{bucket}"
        self._http = httpx.Client(
            headers={"Authorization": f"Bearer {service_key}", "apikey": service_key},
            timeout=timeout_s,
            transport=transport,
        )

    def _url(self, path: str) -> str:
        return f"{self._object_base}/{path}"

    def put_object(self, path: str, content: bytes, content_type: str) -> None:
        try:
            response = self._http.post(
                self._url(path),
                content=content,
                headers={
                    "Content-Type": content_type,
                    "Cache-Control": OBJECT_CACHE_CONTROL,
                    "x-upsert": "true",
                },
            )
        except httpx.HTTPError as e:
            raise StorageError(f"Upload failed: {e}", code="E_UPLOAD_FAILED") from e

        if response.status_code not in (200, 201):
            raise StorageError(
                f"Upload failed: {response.status_code} {response.text}",
                code="E_UPLOAD_FAILED",
            )

    def head_object(self, path: str) -> ObjectMetadata | None:
        try:
            response = self._http.head(self._url(path))
        except httpx.HTTPError as e:
            logger.warning("storage_head_error", path=path, error=str(e))
            return None

        if response.status_code != 200:
            return None
        return ObjectMetadata(
            content_type=response.headers.get("content-type", "application/octet-stream"),
            size_bytes=int(response.headers.get("content-length", "0")),
        )

    def stream_object(self, path: str) -> Iterator[bytes]:
        with self._http.stream("GET", self._url(path), timeout=60.0) as response:
            if response.status_code in (400, 404):
                # Supabase answers 400 for missing objects in private buckets
                raise StorageError(f"Object not found: {path}", code="E_STORAGE_MISSING")
            if response.status_code != 200:
                raise StorageError(f"Download failed: {response.status_code}")
            yield from response.iter_bytes(chunk_size=STREAM_CHUNK_SIZE)

    def delete_object(self, path: str) -> None:
        try:
            response = self._http.delete(self._url(path))
        except httpx.HTTPError as e:
            logger.warning("storage_delete_error", path=path, error=str(e))
            return

        if response.status_code not in (200, 204, 404):
            logger.warning("storage_delete_failed", path=path, status_code=response.status_code)


class FakeStorageClient(StorageClientBase):
    """In-memory storage client for local development and tests."""

    def __init__(self):
        self._objects: dict[str, tuple[bytes, str]] = {}

    def put_object(self, path: str, content: bytes, content_type: str) -> None:
        self._objects[path] = (content, content_type)

    def head_object(self, path: str) -> ObjectMetadata | None:
        if path not in self._objects:
            return None
        content, content_type = self._objects[path]
        return ObjectMetadata(content_type=content_type, size_bytes=len(content))

    def stream_object(self, path: str) -> Iterator[bytes]:
        if path not in self._objects:
            raise StorageError(f"Object not found: {path}", code="E_STORAGE_MISSING")
        content, _ = self._objects[path]
        for start in range(0, len(content), STREAM_CHUNK_SIZE):
            yield content[start : start + STREAM_CHUNK_SIZE]

    def delete_object(self, path: str) -> None:
        self._objects.pop(path, None)

    # Test helpers

    def get_object(self, path: str) -> bytes | None:
        stored = self._objects.get(path)
        return stored[0] if stored else None

    def paths(self) -> list[str]:
        return sorted(self._objects)

    def clear(self) -> None:
        self._objects.clear()


@lru_cache
def get_storage_client() -> StorageClientBase:
    """Supabase storage when SUPABASE_URL and SUPABASE_SERVICE_KEY are set.

    Otherwise a process-wide FakeStorageClient, so local runs work without
    a bucket.
    """
    settings = get_settings()

    if settings.supabase_url and settings.supabase_service_key:
        return StorageClient(
            supabase_url=settings.supabase_url,
            service_key=settings.supabase_service_key,
            bucket=settings.storage_bucket,
        )

    logger.info("storage_using_in_memory_client")
    return FakeStorageClient()
