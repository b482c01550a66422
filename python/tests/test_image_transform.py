"""Tests for image fetch + transform.

Tests cover:
- Variant sizing (bounding boxes, aspect ratio, no upscaling)
- EXIF orientation and mode conversion
- Fetch limits (status, content type, size, timeout)
- Redirect hops re-checked against private addresses
- Decode failures
- Remote transformer error mapping
"""

import base64
import time

import httpx
import pytest
import respx
from httpx import Response

from unfurl.services.image_transform import (
    FULL_MAX_DIMENSION,
    THUMB_MAX_DIMENSION,
    ImageTransformer,
    RemoteImageTransformer,
    TransformedImage,
)
from unfurl.services.link_preview_errors import PipelineError, PipelineErrorKind
from unfurl.services.safe_fetch import BLOCKED_MESSAGE
from tests.image_fixtures import (
    CORRUPT_PNG,
    LANDSCAPE_PNG,
    PALETTE_GIF,
    RGBA_PNG,
    ROTATED_JPEG,
    SMALL_JPEG,
    SVG_CONTENT,
    decoded_format,
    decoded_size,
)

IMAGE_URL = "https://cdn.example.com/photo.png"


def _image_response(content: bytes, content_type: str = "image/png") -> Response:
    return Response(200, headers={"content-type": content_type}, content=content)


def _process_error(transformer: ImageTransformer, url: str = IMAGE_URL) -> PipelineError:
    with pytest.raises(PipelineError) as exc_info:
        transformer.process(url)
    return exc_info.value


class TestVariants:
    @respx.mock
    def test_landscape_variants_fit_bounding_boxes(self):
        respx.get(IMAGE_URL).mock(return_value=_image_response(LANDSCAPE_PNG))

        result = ImageTransformer().process(IMAGE_URL)

        assert (result.width, result.height) == (1200, 800)
        assert decoded_size(result.full) == (FULL_MAX_DIMENSION, 427)
        assert decoded_size(result.thumb) == (THUMB_MAX_DIMENSION, 213)
        assert decoded_format(result.full) == "WEBP"
        assert decoded_format(result.thumb) == "WEBP"

    @respx.mock
    def test_small_images_are_not_upscaled(self):
        respx.get(IMAGE_URL).mock(return_value=_image_response(SMALL_JPEG, "image/jpeg"))

        result = ImageTransformer().process(IMAGE_URL)

        assert (result.width, result.height) == (100, 50)
        assert decoded_size(result.full) == (100, 50)
        assert decoded_size(result.thumb) == (100, 50)

    @respx.mock
    def test_exif_orientation_is_applied(self):
        respx.get(IMAGE_URL).mock(return_value=_image_response(ROTATED_JPEG, "image/jpeg"))

        result = ImageTransformer().process(IMAGE_URL)

        assert (result.width, result.height) == (200, 400)
        assert decoded_size(result.full) == (200, 400)

    @pytest.mark.parametrize(
        "content,content_type",
        [(PALETTE_GIF, "image/gif"), (RGBA_PNG, "image/png")],
    )
    @respx.mock
    def test_non_rgb_modes_are_encoded(self, content, content_type):
        respx.get(IMAGE_URL).mock(return_value=_image_response(content, content_type))

        result = ImageTransformer().process(IMAGE_URL)

        assert decoded_format(result.thumb) == "WEBP"

    def test_payload_round_trip(self):
        image = TransformedImage(full=b"full-bytes", thumb=b"thumb-bytes", width=10, height=20)
        payload = image.to_payload()

        assert payload["full"] == base64.b64encode(b"full-bytes").decode()
        assert TransformedImage.from_payload(payload) == image


class TestFetchLimits:
    def test_rejects_non_http_scheme(self):
        error = _process_error(ImageTransformer(), "ftp://cdn.example.com/a.png")
        assert error.kind == PipelineErrorKind.E_INVALID_URL

    def test_rejects_private_address(self):
        error = _process_error(ImageTransformer(), "http://169.254.169.254/a.png")
        assert error.kind == PipelineErrorKind.E_INVALID_URL

    @respx.mock
    def test_upstream_error_status(self):
        respx.get(IMAGE_URL).mock(return_value=Response(404))
        error = _process_error(ImageTransformer())
        assert error.kind == PipelineErrorKind.E_UPSTREAM_FETCH_FAILED
        assert error.status_code == 502

    @respx.mock
    def test_non_image_content_type(self):
        respx.get(IMAGE_URL).mock(
            return_value=_image_response(b"<html></html>", "text/html; charset=utf-8")
        )
        error = _process_error(ImageTransformer())
        assert error.kind == PipelineErrorKind.E_NOT_AN_IMAGE
        assert error.status_code == 400

    @respx.mock
    def test_svg_is_not_an_image(self):
        respx.get(IMAGE_URL).mock(return_value=_image_response(SVG_CONTENT, "image/svg+xml"))
        error = _process_error(ImageTransformer())
        assert error.kind == PipelineErrorKind.E_NOT_AN_IMAGE

    @respx.mock
    def test_declared_length_over_limit(self):
        respx.get(IMAGE_URL).mock(return_value=_image_response(LANDSCAPE_PNG))
        error = _process_error(ImageTransformer(max_bytes=len(LANDSCAPE_PNG) - 1))
        assert error.kind == PipelineErrorKind.E_TOO_LARGE
        assert error.status_code == 413

    @respx.mock
    def test_streamed_body_over_limit_without_length_header(self):
        half = len(LANDSCAPE_PNG) // 2
        respx.get(IMAGE_URL).mock(
            return_value=Response(
                200,
                headers={"content-type": "image/png"},
                content=iter([LANDSCAPE_PNG[:half], LANDSCAPE_PNG[half:]]),
            )
        )
        error = _process_error(ImageTransformer(max_bytes=half + 1))
        assert error.kind == PipelineErrorKind.E_TOO_LARGE

    @respx.mock
    def test_timeout(self):
        respx.get(IMAGE_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        error = _process_error(ImageTransformer())
        assert error.kind == PipelineErrorKind.E_TIMEOUT
        assert error.status_code == 504

    @respx.mock
    def test_connection_failure(self):
        respx.get(IMAGE_URL).mock(side_effect=httpx.ConnectError("refused"))
        error = _process_error(ImageTransformer())
        assert error.kind == PipelineErrorKind.E_UPSTREAM_FETCH_FAILED


class TestDecodeFailures:
    @respx.mock
    def test_empty_body_is_corrupt(self):
        respx.get(IMAGE_URL).mock(return_value=_image_response(b""))
        error = _process_error(ImageTransformer())
        assert error.kind == PipelineErrorKind.E_CORRUPT

    @respx.mock
    def test_undecodable_body_is_corrupt(self):
        respx.get(IMAGE_URL).mock(return_value=_image_response(CORRUPT_PNG))
        error = _process_error(ImageTransformer())
        assert error.kind == PipelineErrorKind.E_CORRUPT
        assert error.status_code == 400


ENDPOINT = "https://transform.example.com/link-preview/process-image"


class TestRemoteImageTransformer:
    @respx.mock
    def test_success_decodes_payload(self):
        image = TransformedImage(full=b"F", thumb=b"T", width=3, height=4)
        route = respx.post(ENDPOINT).mock(
            return_value=Response(200, json={"data": image.to_payload()})
        )

        result = RemoteImageTransformer(ENDPOINT, internal_secret="s3cret").process(IMAGE_URL)

        assert result == image
        sent = route.calls.last.request
        assert sent.headers["x-unfurl-internal"] == "s3cret"

    @pytest.mark.parametrize(
        "status,code,kind",
        [
            (413, "E_IMAGE_TOO_LARGE", PipelineErrorKind.E_TOO_LARGE),
            (504, "E_UPSTREAM_TIMEOUT", PipelineErrorKind.E_TIMEOUT),
            (400, "E_NOT_AN_IMAGE", PipelineErrorKind.E_NOT_AN_IMAGE),
            (502, None, PipelineErrorKind.E_UPSTREAM_FETCH_FAILED),
            (500, None, PipelineErrorKind.E_INTERNAL),
        ],
    )
    @respx.mock
    def test_error_responses_map_to_kinds(self, status, code, kind):
        body = {"error": {"code": code, "message": "nope"}} if code else {}
        respx.post(ENDPOINT).mock(return_value=Response(status, json=body))

        with pytest.raises(PipelineError) as exc_info:
            RemoteImageTransformer(ENDPOINT).process(IMAGE_URL)
        assert exc_info.value.kind == kind

    @respx.mock
    def test_timeout(self):
        respx.post(ENDPOINT).mock(side_effect=httpx.ConnectTimeout("slow"))
        with pytest.raises(PipelineError) as exc_info:
            RemoteImageTransformer(ENDPOINT).process(IMAGE_URL)
        assert exc_info.value.kind == PipelineErrorKind.E_TIMEOUT


class TestRedirectsAndDeadline:
    @respx.mock
    def test_follows_redirect_to_public_host(self):
        respx.get(IMAGE_URL).mock(
            return_value=Response(302, headers={"location": "https://img.example.net/a.png"})
        )
        respx.get("https://img.example.net/a.png").mock(return_value=_image_response(SMALL_JPEG))

        result = ImageTransformer().process(IMAGE_URL)

        assert decoded_format(result.full) == "WEBP"

    @respx.mock(assert_all_called=False)
    def test_redirect_to_metadata_endpoint_is_blocked(self, respx_mock):
        respx_mock.get(IMAGE_URL).mock(
            return_value=Response(
                302, headers={"location": "http://169.254.169.254/latest/meta-data/"}
            )
        )
        metadata_route = respx_mock.get("http://169.254.169.254/latest/meta-data/").mock(
            return_value=_image_response(SMALL_JPEG)
        )

        error = _process_error(ImageTransformer())

        assert error.kind == PipelineErrorKind.E_INVALID_URL
        assert error.message == BLOCKED_MESSAGE
        assert metadata_route.call_count == 0

    @respx.mock(assert_all_called=False)
    def test_redirect_to_private_dns_name_is_blocked(self, respx_mock, dns):
        dns["nas.example.net"] = "192.168.0.20"
        respx_mock.get(IMAGE_URL).mock(
            return_value=Response(302, headers={"location": "http://nas.example.net/a.png"})
        )
        private_route = respx_mock.get("http://nas.example.net/a.png").mock(
            return_value=_image_response(SMALL_JPEG)
        )

        error = _process_error(ImageTransformer())

        assert error.kind == PipelineErrorKind.E_INVALID_URL
        assert private_route.call_count == 0

    @respx.mock
    def test_stalled_body_times_out_at_deadline(self):
        def stalling_body():
            yield LANDSCAPE_PNG[:64]
            time.sleep(2)
            yield LANDSCAPE_PNG[64:]

        respx.get(IMAGE_URL).mock(
            return_value=Response(
                200, headers={"content-type": "image/png"}, content=stalling_body()
            )
        )

        started = time.monotonic()
        error = _process_error(ImageTransformer(timeout_s=0.3))

        assert error.kind == PipelineErrorKind.E_TIMEOUT
        assert time.monotonic() - started < 1.5
