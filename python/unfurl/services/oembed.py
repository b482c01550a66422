"""Provider embeds (instagram, facebook, threads) via Meta oEmbed endpoints.

Provider URLs bypass generic page scraping: the embed fragment is
fetched from the provider's oEmbed endpoint and cached in oembed_cache.
"""

import httpx
from sqlalchemy.orm import Session

from unfurl.config import get_settings
from unfurl.db.models import OembedCache, OembedProvider
from unfurl.logging import get_logger
from unfurl.schemas.link_preview import EmbedData, EmbedRequestResult
from unfurl.services import preview_cache
from unfurl.services.link_preview_errors import InvalidUrlError, PipelineError, PipelineErrorKind
from unfurl.services.url_key import detect_provider, url_key

logger = get_logger(__name__)

GRAPH_API_VERSION = "v21.0"

OEMBED_ENDPOINTS: dict[OembedProvider, str] = {
    OembedProvider.instagram: f"https://graph.facebook.com/{GRAPH_API_VERSION}/instagram_oembed",
    OembedProvider.facebook: f"https://graph.facebook.com/{GRAPH_API_VERSION}/oembed_post",
    OembedProvider.threads: f"https://graph.facebook.com/{GRAPH_API_VERSION}/threads_oembed",
}

FETCH_TIMEOUT_S = 5.0

UNSUPPORTED_URL_MESSAGE = "URL is not a supported Instagram, Facebook, or Threads post"


def _optional_int(value) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def fetch_oembed(
    url: str, provider: OembedProvider, client: httpx.Client | None = None
) -> preview_cache.OembedFields:
    """Fetch embed markup for a provider URL.

    Raises:
        PipelineError: E_INTERNAL when credentials are missing,
            E_TIMEOUT or E_UPSTREAM_FETCH_FAILED otherwise.
    """
    settings = get_settings()
    if not settings.has_meta_credentials:
        logger.error("oembed_missing_credentials")
        raise PipelineError(PipelineErrorKind.E_INTERNAL, "Server configuration error")

    params = {
        "url": url,
        "omitscript": "true",
        "access_token": f"{settings.meta_app_id}|{settings.meta_client_token}",
    }

    try:
        if client is not None:
            response = client.get(
                OEMBED_ENDPOINTS[provider],
                params=params,
                headers={"Accept": "application/json"},
                timeout=FETCH_TIMEOUT_S,
            )
        else:
            with httpx.Client(trust_env=False) as own_client:
                response = own_client.get(
                    OEMBED_ENDPOINTS[provider],
                    params=params,
                    headers={"Accept": "application/json"},
                    timeout=FETCH_TIMEOUT_S,
                )
    except httpx.TimeoutException as e:
        raise PipelineError(PipelineErrorKind.E_TIMEOUT, "Embed fetch timed out") from e
    except httpx.HTTPError as e:
        raise PipelineError(
            PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, f"Failed to fetch embed: {e}"
        ) from e

    if response.status_code != 200:
        logger.warning(
            "oembed_api_error", provider=provider.value, status_code=response.status_code
        )
        raise PipelineError(
            PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, f"API error: {response.status_code}"
        )

    try:
        data = response.json()
    except ValueError as e:
        raise PipelineError(
            PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, "Malformed embed response"
        ) from e

    html = data.get("html") if isinstance(data, dict) else None
    if not html:
        raise PipelineError(PipelineErrorKind.E_UPSTREAM_FETCH_FAILED, "No embed HTML returned")

    return preview_cache.OembedFields(
        url=url,
        provider=provider,
        html=html,
        author_name=data.get("author_name"),
        thumbnail_url=data.get("thumbnail_url"),
        thumbnail_width=_optional_int(data.get("thumbnail_width")),
        thumbnail_height=_optional_int(data.get("thumbnail_height")),
        width=_optional_int(data.get("width")),
    )


def resolve_oembed(
    db: Session,
    url: str,
    url_hash: str,
    provider: OembedProvider,
    client: httpx.Client | None = None,
) -> OembedCache:
    """Return a fresh cached embed, fetching and caching it on miss or expiry.

    Raises:
        PipelineError: If the provider fetch fails.
    """
    cached = preview_cache.get_oembed(db, url_hash)
    if cached is not None and not preview_cache.is_expired(cached):
        logger.info("oembed_cache_hit", url_hash=url_hash)
        return cached

    fields = fetch_oembed(url, provider, client=client)
    return preview_cache.upsert_oembed(db, url_hash, fields)


def request_embed(
    db: Session, raw_url: str, client: httpx.Client | None = None
) -> EmbedRequestResult:
    """On-demand embed lookup for a single provider URL.

    Never raises for bad input or provider failures; the result carries
    a user-facing error instead.
    """
    try:
        canonical, url_hash = url_key(raw_url)
    except InvalidUrlError:
        return EmbedRequestResult(success=False, error=UNSUPPORTED_URL_MESSAGE)

    provider = detect_provider(canonical)
    if provider is None:
        return EmbedRequestResult(success=False, error=UNSUPPORTED_URL_MESSAGE)

    try:
        row = resolve_oembed(db, canonical, url_hash, provider, client=client)
    except PipelineError as e:
        logger.warning("oembed_request_failed", url_hash=url_hash, kind=e.kind.value)
        return EmbedRequestResult(
            success=False, error="Failed to fetch embed data from Meta API"
        )

    return EmbedRequestResult(
        success=True,
        data=EmbedData(
            html=row.html,
            author_name=row.author_name,
            thumbnail_url=row.thumbnail_url,
            provider=row.provider,
        ),
    )
