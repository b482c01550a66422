"""Outbound fetch guard shared by the page and image fetchers.

Redirects are followed manually so every hop gets the full SSRF check:
- static URL checks (scheme, blocked hostnames, private IP literals)
- DNS resolution, rejecting hosts that resolve to any private address

The fetch budget is wall-clock. Each hop only gets the time left before
the deadline, and run_with_deadline() returns to the caller at the
deadline even when a read is still blocked in the fetch thread.
"""

import socket
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from contextvars import copy_context
from ipaddress import ip_address
from typing import TypeVar
from urllib.parse import urljoin, urlsplit

import httpx

from unfurl.logging import get_logger
from unfurl.services.link_preview_errors import PipelineError, PipelineErrorKind
from unfurl.services.url_key import is_private_address, is_url_safe_to_fetch

logger = get_logger(__name__)

T = TypeVar("T")

MAX_REDIRECTS = 3

REDIRECT_STATUS_CODES = frozenset({301, 302, 303, 307, 308})

BLOCKED_MESSAGE = "URL blocked for security reasons"


def validate_dns_resolution(hostname: str) -> None:
    """Resolve a hostname and require every address to be public.

    Raises:
        PipelineError: E_UPSTREAM_FETCH_FAILED when resolution fails,
            E_INVALID_URL when any address is private.
    """
    try:
        results = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise PipelineError(
            PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, "Failed to resolve hostname"
        ) from e

    if not results:
        raise PipelineError(PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, "Failed to resolve hostname")

    for _family, _, _, _, sockaddr in results:
        if is_private_address(str(sockaddr[0])):
            logger.warning("fetch_blocked_private_dns", hostname=hostname, address=sockaddr[0])
            raise PipelineError(PipelineErrorKind.E_INVALID_URL, BLOCKED_MESSAGE)


def check_fetch_target(url: str) -> None:
    """Full SSRF check for one hop."""
    if not is_url_safe_to_fetch(url):
        raise PipelineError(PipelineErrorKind.E_INVALID_URL, BLOCKED_MESSAGE)

    hostname = (urlsplit(url).hostname or "").rstrip(".")
    try:
        ip_address(hostname)
    except ValueError:
        validate_dns_resolution(hostname)


def remaining_timeout(deadline: float, timeout_message: str) -> httpx.Timeout:
    """httpx timeout for the time left before the deadline."""
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise PipelineError(PipelineErrorKind.E_TIMEOUT, timeout_message)
    return httpx.Timeout(remaining)


@contextmanager
def open_stream(
    client: httpx.Client,
    url: str,
    *,
    headers: dict[str, str],
    deadline: float,
    timeout_message: str,
) -> Iterator[httpx.Response]:
    """Stream a GET, following at most MAX_REDIRECTS validated redirects.

    Raises:
        PipelineError: Blocked hop, redirect without Location, too many
            redirects, or deadline reached between hops.
    """
    current = url
    for _hop in range(MAX_REDIRECTS + 1):
        check_fetch_target(current)
        with client.stream(
            "GET",
            current,
            headers=headers,
            timeout=remaining_timeout(deadline, timeout_message),
            follow_redirects=False,
        ) as response:
            if response.status_code not in REDIRECT_STATUS_CODES:
                yield response
                return

            location = response.headers.get("location")
            if not location:
                raise PipelineError(
                    PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, "Redirect without Location header"
                )
            current = urljoin(str(response.url), location)

    raise PipelineError(
        PipelineErrorKind.E_UPSTREAM_FETCH_FAILED,
        f"Too many redirects (max {MAX_REDIRECTS} allowed)",
    )


def run_with_deadline(fn: Callable[[], T], timeout_s: float, timeout_message: str) -> T:
    """Run a blocking fetch, giving up at the deadline.

    A fetch still blocked on a read keeps its thread until its own httpx
    timeout fires; the caller is released at timeout_s regardless.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="unfurl-fetch")
    future = executor.submit(copy_context().run, fn)
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeoutError as e:
        raise PipelineError(PipelineErrorKind.E_TIMEOUT, timeout_message) from e
    finally:
        executor.shutdown(wait=False)
