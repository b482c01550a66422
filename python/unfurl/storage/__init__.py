"""Re-hosted preview image storage: clients and object paths."""

from unfurl.storage.client import (
    FakeStorageClient,
    ObjectMetadata,
    StorageClient,
    StorageClientBase,
    StorageError,
    get_storage_client,
)
from unfurl.storage.paths import IMAGE_VARIANTS, build_preview_image_path

__all__ = [
    "StorageClient",
    "StorageClientBase",
    "FakeStorageClient",
    "ObjectMetadata",
    "StorageError",
    "get_storage_client",
    "build_preview_image_path",
    "IMAGE_VARIANTS",
]
