"""Storage path building for re-hosted preview images.

All path construction must go through build_preview_image_path() so the
test-run prefix is applied exactly once.

Path Invariant:
    - Production: link-previews/{url_hash}/{variant}.webp
    - Test: test_runs/{run_id}/link-previews/{url_hash}/{variant}.webp

Rules:
    - No leading slash
    - No user identifiers in paths
"""

import os

# Environment variable for test run prefix
TEST_PREFIX_ENV_VAR = "STORAGE_TEST_PREFIX"

IMAGE_VARIANTS = ("full", "thumb")


def _get_test_prefix() -> str:
    prefix = os.environ.get(TEST_PREFIX_ENV_VAR, "")
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    return prefix


def build_preview_image_path(url_hash: str, variant: str) -> str:
    """Build the storage path for one variant of a re-hosted preview image.

    Args:
        url_hash: Cache key of the link.
        variant: "full" or "thumb".

    Returns:
        Full storage path, e.g. "link-previews/3f2a.../thumb.webp".

    Raises:
        ValueError: If variant is unknown.
    """
    if variant not in IMAGE_VARIANTS:
        raise ValueError(f"Unknown image variant '{variant}'")
    return f"{_get_test_prefix()}link-previews/{url_hash}/{variant}.webp"
