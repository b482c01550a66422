"""Tests for HTML fetch and Open Graph extraction."""

import time

import httpx
import pytest
import respx
from httpx import Response

from unfurl.services.link_preview_errors import PipelineError, PipelineErrorKind
from unfurl.services.page_metadata import MAX_HTML_BYTES, extract_metadata, fetch_page
from unfurl.services.safe_fetch import BLOCKED_MESSAGE, MAX_REDIRECTS
from tests.image_fixtures import ARTICLE_HTML, EMPTY_HEAD_HTML

PAGE_URL = "https://blog.example.com/posts/1"
HTML_HEADERS = {"content-type": "text/html"}


class TestExtractMetadata:
    def test_open_graph_tags(self):
        metadata = extract_metadata(ARTICLE_HTML, PAGE_URL)

        assert metadata.title == "Match report: Tigers 3 - 1 Hawks"
        assert metadata.description == "A late surge settles it."
        assert metadata.image_url == "https://blog.example.com/images/hero.png"
        assert metadata.site_name == "League News"
        assert metadata.og_type == "article"
        assert metadata.favicon_url == "https://blog.example.com/static/favicon.png"

    def test_twitter_fallbacks(self):
        html = """<html><head>
            <meta name="twitter:title" content="Tweeted title">
            <meta name="twitter:description" content="Tweeted description">
            <meta name="twitter:image" content="https://img.example.com/t.jpg">
        </head></html>"""
        metadata = extract_metadata(html, PAGE_URL)

        assert metadata.title == "Tweeted title"
        assert metadata.description == "Tweeted description"
        assert metadata.image_url == "https://img.example.com/t.jpg"

    def test_plain_html_fallbacks(self):
        html = """<html><head>
            <title> Plain title </title>
            <meta name="description" content="Plain description">
        </head></html>"""
        metadata = extract_metadata(html, PAGE_URL)

        assert metadata.title == "Plain title"
        assert metadata.description == "Plain description"
        assert metadata.image_url is None

    def test_default_favicon(self):
        metadata = extract_metadata("<html><head><title>x</title></head></html>", PAGE_URL)
        assert metadata.favicon_url == "https://blog.example.com/favicon.ico"

    def test_apple_touch_icon(self):
        html = '<html><head><title>x</title><link rel="apple-touch-icon" href="/t.png"></head>'
        metadata = extract_metadata(html, PAGE_URL)
        assert metadata.favicon_url == "https://blog.example.com/t.png"

    def test_ignores_non_http_image(self):
        html = '<html><head><meta property="og:image" content="data:image/png;base64,AA"></head>'
        assert extract_metadata(html, PAGE_URL) is None

    @pytest.mark.parametrize("html", [b"", b"   ", EMPTY_HEAD_HTML])
    def test_no_metadata(self, html):
        assert extract_metadata(html, PAGE_URL) is None


class TestFetchPage:
    @respx.mock
    def test_html_page(self):
        respx.get(PAGE_URL).mock(
            return_value=Response(200, headers={"content-type": "text/html"}, content=b"<html>")
        )
        page = fetch_page(PAGE_URL)
        assert page.is_html is True
        assert page.html == b"<html>"
        assert page.final_url == PAGE_URL

    @respx.mock
    def test_xhtml_is_html(self):
        respx.get(PAGE_URL).mock(
            return_value=Response(
                200, headers={"content-type": "application/xhtml+xml"}, content=b"<html/>"
            )
        )
        assert fetch_page(PAGE_URL).is_html is True

    @respx.mock
    def test_non_html(self):
        respx.get(PAGE_URL).mock(
            return_value=Response(200, headers={"content-type": "image/png"}, content=b"\x89PNG")
        )
        page = fetch_page(PAGE_URL)
        assert page.is_html is False
        assert page.html == b""

    @respx.mock
    def test_reads_at_most_cap(self):
        body = b"<html>" + b"a" * (MAX_HTML_BYTES * 2)
        respx.get(PAGE_URL).mock(
            return_value=Response(200, headers={"content-type": "text/html"}, content=body)
        )
        assert len(fetch_page(PAGE_URL).html) == MAX_HTML_BYTES

    @respx.mock
    def test_error_status(self):
        respx.get(PAGE_URL).mock(return_value=Response(403))
        with pytest.raises(PipelineError) as exc_info:
            fetch_page(PAGE_URL)
        assert exc_info.value.kind == PipelineErrorKind.E_UPSTREAM_FETCH_FAILED

    @respx.mock
    def test_timeout(self):
        respx.get(PAGE_URL).mock(side_effect=httpx.ConnectTimeout("slow"))
        with pytest.raises(PipelineError) as exc_info:
            fetch_page(PAGE_URL)
        assert exc_info.value.kind == PipelineErrorKind.E_TIMEOUT

    @respx.mock
    def test_body_stall_is_bounded_by_wall_clock(self):
        def stalling_body():
            yield b"<html><head>"
            time.sleep(2)
            yield b"<title>late</title>"

        respx.get(PAGE_URL).mock(
            return_value=Response(200, headers=HTML_HEADERS, content=stalling_body())
        )

        started = time.monotonic()
        with pytest.raises(PipelineError) as exc_info:
            fetch_page(PAGE_URL, timeout_s=0.3)

        assert exc_info.value.kind == PipelineErrorKind.E_TIMEOUT
        assert time.monotonic() - started < 1.5


class TestRedirects:
    @respx.mock
    def test_follows_relative_redirect(self):
        respx.get(PAGE_URL).mock(return_value=Response(301, headers={"location": "/posts/2"}))
        respx.get("https://blog.example.com/posts/2").mock(
            return_value=Response(200, headers=HTML_HEADERS, content=b"<html>")
        )

        page = fetch_page(PAGE_URL)

        assert page.final_url == "https://blog.example.com/posts/2"
        assert page.html == b"<html>"

    @respx.mock(assert_all_called=False)
    def test_redirect_to_loopback_is_blocked(self, respx_mock):
        respx_mock.get(PAGE_URL).mock(
            return_value=Response(302, headers={"location": "http://127.0.0.1:8080/admin"})
        )
        internal = respx_mock.get("http://127.0.0.1:8080/admin").mock(
            return_value=Response(200, headers=HTML_HEADERS, content=b"<title>ADMIN</title>")
        )

        with pytest.raises(PipelineError) as exc_info:
            fetch_page(PAGE_URL)

        assert exc_info.value.kind == PipelineErrorKind.E_INVALID_URL
        assert exc_info.value.message == BLOCKED_MESSAGE
        assert internal.call_count == 0

    @respx.mock(assert_all_called=False)
    def test_redirect_to_host_resolving_to_private_address_is_blocked(self, respx_mock, dns):
        dns["intranet.example.com"] = "10.0.0.5"
        respx_mock.get(PAGE_URL).mock(
            return_value=Response(302, headers={"location": "https://intranet.example.com/"})
        )
        internal = respx_mock.get("https://intranet.example.com/").mock(
            return_value=Response(200, headers=HTML_HEADERS, content=b"<html>")
        )

        with pytest.raises(PipelineError) as exc_info:
            fetch_page(PAGE_URL)

        assert exc_info.value.kind == PipelineErrorKind.E_INVALID_URL
        assert internal.call_count == 0

    @respx.mock(assert_all_called=False)
    def test_first_hop_resolving_to_private_address_is_blocked(self, respx_mock, dns):
        dns["blog.example.com"] = "192.168.1.10"
        route = respx_mock.get(PAGE_URL).mock(return_value=Response(200, headers=HTML_HEADERS))

        with pytest.raises(PipelineError) as exc_info:
            fetch_page(PAGE_URL)

        assert exc_info.value.kind == PipelineErrorKind.E_INVALID_URL
        assert route.call_count == 0

    @respx.mock
    def test_redirect_loop_is_cut_off(self):
        route = respx.get(PAGE_URL).mock(
            return_value=Response(302, headers={"location": PAGE_URL})
        )

        with pytest.raises(PipelineError) as exc_info:
            fetch_page(PAGE_URL)

        assert exc_info.value.kind == PipelineErrorKind.E_UPSTREAM_FETCH_FAILED
        assert route.call_count == MAX_REDIRECTS + 1

    @respx.mock
    def test_redirect_without_location(self):
        respx.get(PAGE_URL).mock(return_value=Response(302))

        with pytest.raises(PipelineError) as exc_info:
            fetch_page(PAGE_URL)

        assert exc_info.value.kind == PipelineErrorKind.E_UPSTREAM_FETCH_FAILED
