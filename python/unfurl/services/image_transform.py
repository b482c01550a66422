"""Image fetch and transform for re-hosted preview images.

Fetches a remote image under hard limits and produces two WEBP variants
from a single fetch and a single decode:
- thumb: longest edge <= 320px
- full: longest edge <= 640px

Both preserve aspect ratio and are never upscaled. The original
(pre-resize) pixel dimensions are returned for layout.

Limits (each violation is an error, never a partial result):
- http/https only
- 5 second wall-clock fetch limit, redirects re-checked on every hop
- Response must declare an image/* content type
- 5 MiB cap, checked against Content-Length and again while streaming
- Zero-byte or undecodable bodies are corrupt

Two implementations share the contract:
- ImageTransformer runs in-process (used by the transform endpoint and
  by the pipeline when no remote endpoint is configured)
- RemoteImageTransformer calls POST /link-preview/process-image
"""

import base64
import io
import time
from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

from unfurl.config import get_settings
from unfurl.logging import get_logger, get_request_id
from unfurl.services.link_preview_errors import (
    PipelineError,
    PipelineErrorKind,
    kind_from_response,
)
from unfurl.services.safe_fetch import BLOCKED_MESSAGE, open_stream, run_with_deadline
from unfurl.services.url_key import is_url_safe_to_fetch

logger = get_logger(__name__)

# =============================================================================
# Configuration Constants
# =============================================================================

MAX_IMAGE_BYTES = 5 * 1024 * 1024

FETCH_TIMEOUT_S = 5.0
TIMEOUT_MESSAGE = "Image fetch timed out"

THUMB_MAX_DIMENSION = 320
FULL_MAX_DIMENSION = 640

OUTPUT_FORMAT = "WEBP"
OUTPUT_CONTENT_TYPE = "image/webp"
OUTPUT_QUALITY = 70

ALLOWED_SCHEMES = frozenset({"http", "https"})

# Declared image/* types Pillow cannot rasterize
NON_RASTER_CONTENT_TYPES = frozenset({"image/svg+xml"})

USER_AGENT = "UnfurlImageFetcher/1.0"

INTERNAL_HEADER = "x-unfurl-internal"


@dataclass(frozen=True)
class TransformedImage:
    """Encoded variants plus the source image's pixel dimensions."""

    full: bytes
    thumb: bytes
    width: int
    height: int

    def to_payload(self) -> dict:
        """Wire form used by the transform endpoint."""
        return {
            "full": base64.b64encode(self.full).decode("ascii"),
            "thumb": base64.b64encode(self.thumb).decode("ascii"),
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "TransformedImage":
        return cls(
            full=base64.b64decode(payload["full"]),
            thumb=base64.b64decode(payload["thumb"]),
            width=int(payload["width"]),
            height=int(payload["height"]),
        )


# =============================================================================
# Fetching
# =============================================================================


def _declared_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _media_type(content_type: str | None) -> str:
    return (content_type or "").split(";")[0].strip().lower()


class ImageTransformer:
    """In-process image fetch + transform."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        timeout_s: float = FETCH_TIMEOUT_S,
        max_bytes: int = MAX_IMAGE_BYTES,
    ):
        self._client = client
        self._timeout_s = timeout_s
        self._max_bytes = max_bytes

    def process(self, url: str) -> TransformedImage:
        """Fetch an image and produce its full and thumb variants.

        Raises:
            PipelineError: Classified failure. Nothing is stored on failure.
        """
        self._validate_url(url)
        data = self.fetch(url)
        image = self.decode(data)
        width, height = image.size

        return TransformedImage(
            full=self._encode_variant(image, FULL_MAX_DIMENSION),
            thumb=self._encode_variant(image, THUMB_MAX_DIMENSION),
            width=width,
            height=height,
        )

    def _validate_url(self, url: str) -> None:
        try:
            scheme = urlsplit(url).scheme.lower()
        except ValueError as e:
            raise PipelineError(PipelineErrorKind.E_INVALID_URL, "Invalid image URL") from e

        if scheme not in ALLOWED_SCHEMES:
            raise PipelineError(
                PipelineErrorKind.E_INVALID_URL, "Image URL must be http or https"
            )
        if not is_url_safe_to_fetch(url):
            raise PipelineError(PipelineErrorKind.E_INVALID_URL, BLOCKED_MESSAGE)

    def fetch(self, url: str) -> bytes:
        """Download the image body under the timeout and byte limits."""
        deadline = time.monotonic() + self._timeout_s

        def run() -> bytes:
            if self._client is not None:
                return self._fetch_with(self._client, url, deadline)
            with httpx.Client(follow_redirects=False, trust_env=False) as client:
                return self._fetch_with(client, url, deadline)

        return run_with_deadline(run, self._timeout_s, TIMEOUT_MESSAGE)

    def _fetch_with(self, client: httpx.Client, url: str, deadline: float) -> bytes:
        try:
            with open_stream(
                client,
                url,
                headers={"User-Agent": USER_AGENT, "Accept": "image/*"},
                deadline=deadline,
                timeout_message=TIMEOUT_MESSAGE,
            ) as response:
                if response.status_code >= 400:
                    raise PipelineError(
                        PipelineErrorKind.E_UPSTREAM_FETCH_FAILED,
                        f"Upstream returned status {response.status_code}",
                    )

                media_type = _media_type(response.headers.get("content-type"))
                if not media_type.startswith("image/") or media_type in NON_RASTER_CONTENT_TYPES:
                    raise PipelineError(
                        PipelineErrorKind.E_NOT_AN_IMAGE,
                        f"Not an image: {media_type or 'missing content type'}",
                    )

                declared = _declared_length(response)
                if declared is not None and declared > self._max_bytes:
                    raise PipelineError(
                        PipelineErrorKind.E_TOO_LARGE,
                        f"Image exceeds maximum size of {self._max_bytes} bytes",
                    )

                chunks = []
                total = 0
                for chunk in response.iter_bytes(chunk_size=64 * 1024):
                    if time.monotonic() > deadline:
                        raise PipelineError(PipelineErrorKind.E_TIMEOUT, TIMEOUT_MESSAGE)
                    total += len(chunk)
                    if total > self._max_bytes:
                        raise PipelineError(
                            PipelineErrorKind.E_TOO_LARGE,
                            f"Image exceeds maximum size of {self._max_bytes} bytes",
                        )
                    chunks.append(chunk)

        except httpx.TimeoutException as e:
            raise PipelineError(PipelineErrorKind.E_TIMEOUT, TIMEOUT_MESSAGE) from e
        except httpx.HTTPError as e:
            raise PipelineError(
                PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, f"Failed to fetch image: {e}"
            ) from e

        if time.monotonic() > deadline:
            raise PipelineError(PipelineErrorKind.E_TIMEOUT, TIMEOUT_MESSAGE)

        data = b"".join(chunks)
        if not data:
            raise PipelineError(PipelineErrorKind.E_CORRUPT, "Image body is empty")
        return data

    # =========================================================================
    # Decoding and encoding
    # =========================================================================

    @staticmethod
    def decode(data: bytes) -> Image.Image:
        """Decode once, applying EXIF orientation.

        Raises:
            PipelineError: E_CORRUPT for undecodable or dimensionless bodies.
        """
        try:
            checked = Image.open(io.BytesIO(data))
            checked.verify()

            # verify() leaves the image unusable; reopen to decode
            image = Image.open(io.BytesIO(data))
            image.load()
            image = ImageOps.exif_transpose(image)
        except Image.DecompressionBombError as e:
            raise PipelineError(
                PipelineErrorKind.E_TOO_LARGE, "Image exceeds dimension limits"
            ) from e
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            logger.warning("image_decode_failed", error=str(e))
            raise PipelineError(PipelineErrorKind.E_CORRUPT, "Image could not be decoded") from e

        width, height = image.size
        if width <= 0 or height <= 0:
            raise PipelineError(PipelineErrorKind.E_CORRUPT, "Image has no dimensions")

        if image.mode not in ("RGB", "RGBA"):
            has_alpha = "A" in image.mode or "transparency" in image.info
            image = image.convert("RGBA" if has_alpha else "RGB")
        return image

    @staticmethod
    def _encode_variant(image: Image.Image, max_dimension: int) -> bytes:
        variant = image.copy()
        # thumbnail() keeps aspect ratio and never enlarges
        variant.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

        buffer = io.BytesIO()
        variant.save(buffer, format=OUTPUT_FORMAT, quality=OUTPUT_QUALITY)
        return buffer.getvalue()


class RemoteImageTransformer:
    """Client for a remote image transform endpoint.

    Maps structured error responses back to PipelineError kinds so the
    pipeline classifies remote and in-process failures identically.
    """

    def __init__(
        self,
        endpoint_url: str,
        internal_secret: str | None = None,
        client: httpx.Client | None = None,
        timeout_s: float = 15.0,
    ):
        self._endpoint_url = endpoint_url
        self._internal_secret = internal_secret
        self._client = client
        self._timeout_s = timeout_s

    def process(self, url: str) -> TransformedImage:
        headers = {"Accept": "application/json"}
        if self._internal_secret:
            headers[INTERNAL_HEADER] = self._internal_secret
        request_id = get_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id

        try:
            if self._client is not None:
                response = self._post(self._client, url, headers)
            else:
                with httpx.Client(trust_env=False) as client:
                    response = self._post(client, url, headers)
        except httpx.TimeoutException as e:
            raise PipelineError(PipelineErrorKind.E_TIMEOUT, "Image transform timed out") from e
        except httpx.HTTPError as e:
            raise PipelineError(
                PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, f"Image transform unreachable: {e}"
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        if response.status_code != 200:
            error = body.get("error") or {}
            kind = kind_from_response(response.status_code, error.get("code"))
            raise PipelineError(kind, error.get("message") or f"HTTP {response.status_code}")

        try:
            return TransformedImage.from_payload(body["data"])
        except (KeyError, TypeError, ValueError) as e:
            raise PipelineError(
                PipelineErrorKind.E_INTERNAL, "Malformed image transform response"
            ) from e

    def _post(self, client: httpx.Client, url: str, headers: dict[str, str]) -> httpx.Response:
        return client.post(
            self._endpoint_url, json={"url": url}, headers=headers, timeout=self._timeout_s
        )


def get_image_transformer() -> ImageTransformer | RemoteImageTransformer:
    """Pick the remote endpoint when configured, otherwise transform in-process."""
    settings = get_settings()
    if settings.image_transform_url:
        return RemoteImageTransformer(
            settings.image_transform_url,
            internal_secret=settings.unfurl_internal_secret,
        )
    return ImageTransformer()
