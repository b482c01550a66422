"""HTML fetch and Open Graph metadata extraction for generic pages.

Only the start of a document is read (OG tags live in <head>), under the
same 5 second wall-clock limit as image fetches.
"""

import time
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit

import httpx
from lxml import etree
from lxml.html import HtmlElement, document_fromstring

from unfurl.logging import get_logger
from unfurl.services.link_preview_errors import PipelineError, PipelineErrorKind
from unfurl.services.safe_fetch import open_stream, run_with_deadline

logger = get_logger(__name__)

FETCH_TIMEOUT_S = 5.0
TIMEOUT_MESSAGE = "Page fetch timed out"

# Enough to cover <head> on practically every page
MAX_HTML_BYTES = 100 * 1024

HTML_CONTENT_TYPES = ("text/html", "application/xhtml")

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

FAVICON_RELS = ("icon", "shortcut icon", "apple-touch-icon")


@dataclass(frozen=True)
class FetchedPage:
    """Start of an HTML document and the URL it was served from."""

    html: bytes
    final_url: str
    is_html: bool


@dataclass(frozen=True)
class PageMetadata:
    title: str | None
    description: str | None
    image_url: str | None
    site_name: str | None
    og_type: str | None
    favicon_url: str | None


def fetch_page(
    url: str, client: httpx.Client | None = None, *, timeout_s: float = FETCH_TIMEOUT_S
) -> FetchedPage:
    """Fetch the start of a page, following validated redirects.

    Non-HTML responses are returned with is_html=False and no body.

    Raises:
        PipelineError: E_TIMEOUT, E_INVALID_URL for a blocked hop, or
            E_UPSTREAM_FETCH_FAILED.
    """
    deadline = time.monotonic() + timeout_s

    def run() -> FetchedPage:
        if client is not None:
            return _fetch_with(client, url, deadline)
        with httpx.Client(follow_redirects=False, trust_env=False) as own_client:
            return _fetch_with(own_client, url, deadline)

    return run_with_deadline(run, timeout_s, TIMEOUT_MESSAGE)


def _fetch_with(client: httpx.Client, url: str, deadline: float) -> FetchedPage:
    try:
        with open_stream(
            client,
            url,
            headers=BROWSER_HEADERS,
            deadline=deadline,
            timeout_message=TIMEOUT_MESSAGE,
        ) as response:
            if response.status_code >= 400:
                raise PipelineError(
                    PipelineErrorKind.E_UPSTREAM_FETCH_FAILED,
                    f"Upstream returned status {response.status_code}",
                )

            final_url = str(response.url)
            content_type = response.headers.get("content-type", "").lower()
            if not any(kind in content_type for kind in HTML_CONTENT_TYPES):
                logger.info("link_preview_non_html", content_type=content_type)
                return FetchedPage(html=b"", final_url=final_url, is_html=False)

            chunks = []
            total = 0
            for chunk in response.iter_bytes(chunk_size=16 * 1024):
                if time.monotonic() > deadline:
                    raise PipelineError(PipelineErrorKind.E_TIMEOUT, TIMEOUT_MESSAGE)
                chunks.append(chunk)
                total += len(chunk)
                if total >= MAX_HTML_BYTES:
                    break

    except httpx.TimeoutException as e:
        raise PipelineError(PipelineErrorKind.E_TIMEOUT, TIMEOUT_MESSAGE) from e
    except httpx.HTTPError as e:
        raise PipelineError(
            PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, f"Failed to fetch URL: {e}"
        ) from e

    return FetchedPage(html=b"".join(chunks)[:MAX_HTML_BYTES], final_url=final_url, is_html=True)


# =============================================================================
# Extraction
# =============================================================================


def _meta(doc: HtmlElement, *keys: str) -> str | None:
    """First non-empty content of <meta property=key> or <meta name=key>."""
    for key in keys:
        for content in doc.xpath("//meta[@property=$key or @name=$key]/@content", key=key):
            if content and content.strip():
                return content.strip()
    return None


def _title(doc: HtmlElement) -> str | None:
    title = _meta(doc, "og:title", "twitter:title")
    if title:
        return title
    for element in doc.xpath("//title"):
        text = (element.text_content() or "").strip()
        if text:
            return text
    return None


def _resolve(page_url: str, href: str | None) -> str | None:
    if not href:
        return None
    resolved = urljoin(page_url, href.strip())
    if urlsplit(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def _favicon(doc: HtmlElement, page_url: str) -> str:
    for rel in FAVICON_RELS:
        for link in doc.xpath("//link[@href]"):
            if (link.get("rel") or "").strip().lower() == rel:
                resolved = _resolve(page_url, link.get("href"))
                if resolved:
                    return resolved

    parts = urlsplit(page_url)
    return f"{parts.scheme}://{parts.netloc}/favicon.ico"


def extract_metadata(html: bytes | str, page_url: str) -> PageMetadata | None:
    """Extract Open Graph / Twitter / HTML metadata.

    Returns:
        PageMetadata, or None when the page has no title, description or image.
    """
    if not html or not html.strip():
        return None

    try:
        doc = document_fromstring(html)
    except (etree.ParserError, ValueError) as e:
        logger.info("link_preview_unparseable_html", error=str(e))
        return None

    title = _title(doc)
    description = _meta(doc, "og:description", "twitter:description", "description")
    image_url = _resolve(
        page_url,
        _meta(doc, "og:image", "og:image:url", "twitter:image", "twitter:image:src"),
    )

    if not title and not description and not image_url:
        return None

    return PageMetadata(
        title=title,
        description=description,
        image_url=image_url,
        site_name=_meta(doc, "og:site_name"),
        og_type=_meta(doc, "og:type"),
        favicon_url=_favicon(doc, page_url),
    )
