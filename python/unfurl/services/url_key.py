"""URL canonicalization and cache key derivation.

Every cache lookup goes through normalize_url() then hash_url(); the raw
URL is never used as a key.

Canonical form:
- Scheme must be http or https; bare domains ("example.com/x") get https
- Scheme and host are lowercased
- Default ports (80 for http, 443 for https) are removed
- A single trailing slash on the path is removed
- Query and fragment are kept verbatim
- Credentials (user:pass@host) are rejected
"""

import hashlib
import ipaddress
import re
from urllib.parse import urlsplit

from unfurl.db.models import OembedProvider
from unfurl.services.link_preview_errors import InvalidUrlError

MAX_URL_LENGTH = 2048

ALLOWED_SCHEMES = frozenset({"http", "https"})

DEFAULT_PORTS = {"http": 80, "https": 443}

# Scheme prefix that is not a bare "host:port"
_SCHEME_PREFIX = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:(?!\d)")

_LABEL = r"[a-z0-9_]([a-z0-9_-]*[a-z0-9_])?"
_HOSTNAME = re.compile(rf"^{_LABEL}(\.{_LABEL})*\.?$")

# Characters that terminate a URL inside message text
URL_IN_TEXT = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+", re.IGNORECASE)

PROVIDER_PATTERNS: tuple[tuple[OembedProvider, re.Pattern[str]], ...] = (
    (
        OembedProvider.instagram,
        re.compile(r"^https?://(www\.)?instagram\.com/(p|reel|reels|tv)/[\w-]+/?", re.IGNORECASE),
    ),
    (
        OembedProvider.facebook,
        re.compile(
            r"^https?://(www\.|m\.)?facebook\.com/.+/(posts|videos|photos|watch)/.+",
            re.IGNORECASE,
        ),
    ),
    (
        OembedProvider.threads,
        re.compile(r"^https?://(www\.)?threads\.net/@[\w.]+/post/\w+", re.IGNORECASE),
    ),
)

# Hostnames never fetched
BLOCKED_HOSTNAMES = frozenset({"localhost"})
BLOCKED_HOSTNAME_SUFFIXES = (".local", ".internal", ".localhost")


def normalize_url(raw_url: str) -> str:
    """Canonicalize a URL.

    Deterministic and side-effect free: the same input always yields the
    same output.

    Args:
        raw_url: URL as typed by a user, with or without a scheme.

    Returns:
        The canonical URL string.

    Raises:
        InvalidUrlError: If the URL is malformed or not http(s).
    """
    url = (raw_url or "").strip()
    if not url:
        raise InvalidUrlError("URL is empty")
    if len(url) > MAX_URL_LENGTH:
        raise InvalidUrlError(f"URL exceeds maximum length of {MAX_URL_LENGTH} characters")
    if any(ch.isspace() for ch in url):
        raise InvalidUrlError("URL must not contain whitespace")

    bare = "://" not in url and not _SCHEME_PREFIX.match(url)
    if bare:
        url = f"https://{url}"

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise InvalidUrlError(f"Invalid URL format: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidUrlError(
            f"Invalid URL scheme '{parts.scheme}'. Only http and https are allowed."
        )

    if parts.username is not None or parts.password is not None:
        raise InvalidUrlError("URLs with credentials are not allowed")

    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidUrlError("URL must have a host")

    if ":" in host:
        try:
            ipaddress.IPv6Address(host)
        except ValueError as e:
            raise InvalidUrlError(f"Invalid host '{host}'") from e
        host = f"[{host}]"
    elif not _HOSTNAME.match(host):
        raise InvalidUrlError(f"Invalid host '{host}'")
    elif bare and "." not in host:
        raise InvalidUrlError(f"'{raw_url}' is not a URL")

    netloc = host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"

    path = parts.path
    if path.endswith("/"):
        path = path[:-1]

    canonical = f"{scheme}://{netloc}{path}"
    if parts.query:
        canonical += f"?{parts.query}"
    if parts.fragment:
        canonical += f"#{parts.fragment}"
    return canonical


def hash_url(canonical_url: str) -> str:
    """Derive the cache key (SHA-256 hex) of a canonical URL."""
    return hashlib.sha256(canonical_url.encode("utf-8")).hexdigest()


def url_key(raw_url: str) -> tuple[str, str]:
    """Normalize and hash in one step.

    Returns:
        Tuple of (canonical_url, url_hash).

    Raises:
        InvalidUrlError: If the URL is malformed or not http(s).
    """
    canonical = normalize_url(raw_url)
    return canonical, hash_url(canonical)


def extract_urls(body: str) -> list[str]:
    """Find http(s) URLs in a message body.

    Returns canonical URLs, de-duplicated in order of first appearance.
    Malformed matches are skipped.
    """
    seen: set[str] = set()
    urls: list[str] = []
    for match in URL_IN_TEXT.findall(body or ""):
        try:
            canonical = normalize_url(match)
        except InvalidUrlError:
            continue
        if canonical not in seen:
            seen.add(canonical)
            urls.append(canonical)
    return urls


def detect_provider(url: str) -> OembedProvider | None:
    """Return the oEmbed provider serving this URL, or None for generic pages."""
    for provider, pattern in PROVIDER_PATTERNS:
        if pattern.match(url):
            return provider
    return None


def is_private_address(host: str) -> bool:
    """True for loopback, private, link-local and other non-public IP literals."""
    try:
        ip = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_unspecified
        or ip.is_multicast
    )


def is_url_safe_to_fetch(url: str) -> bool:
    """Basic SSRF guard applied before any outbound fetch.

    Blocks non-http(s) schemes, localhost, private/link-local IP literals
    and internal-only hostnames.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return False

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        return False

    host = (parts.hostname or "").lower().rstrip(".")
    if not host:
        return False
    if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_HOSTNAME_SUFFIXES):
        return False
    if is_private_address(host):
        return False
    return True
