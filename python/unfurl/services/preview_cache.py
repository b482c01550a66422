"""Content-addressed cache of link previews and provider embeds.

Both tables are keyed by url_hash and written only through the upserts
below. Upserts use the dialect's native INSERT .. ON CONFLICT (url_hash)
DO UPDATE, so writers racing on one hash collapse into a single row and
the last full-record write wins. There is no in-memory layer; every
write is committed before the function returns.

Expiry is lazy: readers may see rows past expires_at until a sweep
removes them. Sweeps delete at most max_batch rows per call and are
meant to be re-invoked until they return 0.
"""

from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from unfurl.config import get_settings
from unfurl.db.models import LinkPreview, LinkPreviewStatus, OembedCache, OembedProvider
from unfurl.logging import get_logger
from unfurl.storage import StorageClientBase

logger = get_logger(__name__)


@dataclass
class PreviewFields:
    """Full record written by upsert_preview.

    Every field is written on each upsert; None clears the column.
    fetched_at/expires_at default to now and now + LINK_PREVIEW_TTL_S.
    """

    url: str
    status: LinkPreviewStatus
    canonical_url: str | None = None
    error_message: str | None = None
    title: str | None = None
    description: str | None = None
    site_name: str | None = None
    og_type: str | None = None
    favicon_url: str | None = None
    original_image_url: str | None = None
    image_full_ref: str | None = None
    image_thumb_ref: str | None = None
    image_width: int | None = None
    image_height: int | None = None
    fetched_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass
class OembedFields:
    """Full record written by upsert_oembed.

    fetched_at/expires_at default to now and now + OEMBED_TTL_S.
    """

    url: str
    provider: OembedProvider
    html: str
    author_name: str | None = None
    thumbnail_url: str | None = None
    thumbnail_width: int | None = None
    thumbnail_height: int | None = None
    width: int | None = None
    fetched_at: datetime | None = None
    expires_at: datetime | None = None


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_expired(row: LinkPreview | OembedCache, now: datetime | None = None) -> bool:
    """Past expires_at. Same boundary as the sweeps."""
    return as_utc(row.expires_at) < (now or utcnow())


def _insert(db: Session, table):
    """Dialect-native INSERT supporting ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect '{dialect}'")


def _timestamps(
    fetched_at: datetime | None, expires_at: datetime | None, ttl_s: int
) -> tuple[datetime, datetime]:
    fetched = fetched_at or utcnow()
    expires = expires_at or fetched + timedelta(seconds=ttl_s)
    if expires <= fetched:
        raise ValueError("expires_at must be after fetched_at")
    return fetched, expires


# =============================================================================
# Link previews
# =============================================================================


def get_one(db: Session, url_hash: str) -> LinkPreview | None:
    """Get the preview row for a hash, or None."""
    return db.scalar(
        select(LinkPreview)
        .where(LinkPreview.url_hash == url_hash)
        .execution_options(populate_existing=True)
    )


def get_many(db: Session, url_hashes: Iterable[str]) -> list[LinkPreview]:
    """Batch lookup. Absent hashes are omitted from the result."""
    hashes = set(url_hashes)
    if not hashes:
        return []
    stmt = (
        select(LinkPreview)
        .where(LinkPreview.url_hash.in_(hashes))
        .execution_options(populate_existing=True)
    )
    return list(db.scalars(stmt))


def ensure_pending(
    db: Session, url_hash: str, url: str, now: datetime | None = None
) -> LinkPreview:
    """Create a pending row if none exists. Never overwrites an existing row."""
    settings = get_settings()
    fetched_at, expires_at = _timestamps(now, None, settings.link_preview_ttl_s)

    stmt = (
        _insert(db, LinkPreview)
        .values(
            url_hash=url_hash,
            url=url,
            status=LinkPreviewStatus.pending.value,
            fetched_at=fetched_at,
            expires_at=expires_at,
        )
        .on_conflict_do_nothing(index_elements=["url_hash"])
    )
    db.execute(stmt)
    db.commit()

    row = get_one(db, url_hash)
    if row is None:
        # Deleted by a concurrent sweep between insert and read
        return ensure_pending(db, url_hash, url, now)
    return row


def upsert_preview(db: Session, url_hash: str, fields: PreviewFields) -> LinkPreview:
    """Insert or patch the preview row for a hash.

    An existing row keeps its identity and has every field replaced.
    Returns the row as stored after commit.
    """
    settings = get_settings()
    fetched_at, expires_at = _timestamps(
        fields.fetched_at, fields.expires_at, settings.link_preview_ttl_s
    )

    values = asdict(fields)
    values.update(
        url_hash=url_hash,
        status=LinkPreviewStatus(fields.status).value,
        fetched_at=fetched_at,
        expires_at=expires_at,
    )

    stmt = _insert(db, LinkPreview).values(**values)
    update_cols = {name: stmt.excluded[name] for name in values if name != "url_hash"}
    update_cols["updated_at"] = utcnow()
    stmt = stmt.on_conflict_do_update(index_elements=["url_hash"], set_=update_cols)

    db.execute(stmt)
    db.commit()

    row = get_one(db, url_hash)
    if row is None:
        return upsert_preview(db, url_hash, fields)
    logger.info("link_preview_upserted", url_hash=url_hash, status=values["status"])
    return row


def _delete_images(storage: StorageClientBase, refs: Iterable[str | None]) -> None:
    for ref in refs:
        if ref:
            storage.delete_object(ref)


def delete_preview(db: Session, url_hash: str, storage: StorageClientBase) -> bool:
    """Remove one preview row and its stored images.

    This is the explicit invalidation path: the next reference to the
    URL processes it again.

    Returns:
        True if a row was deleted.
    """
    row = get_one(db, url_hash)
    if row is None:
        return False

    refs = (row.image_full_ref, row.image_thumb_ref)
    db.execute(delete(LinkPreview).where(LinkPreview.id == row.id))
    db.commit()

    _delete_images(storage, refs)
    logger.info("link_preview_deleted", url_hash=url_hash)
    return True


def sweep_expired_previews(
    db: Session, now: datetime, max_batch: int, storage: StorageClientBase
) -> int:
    """Delete at most max_batch preview rows with expires_at < now.

    Stored images of deleted rows are removed best-effort after commit.

    Returns:
        Number of rows deleted.
    """
    if max_batch < 1:
        raise ValueError("max_batch must be at least 1")

    expired = db.execute(
        select(LinkPreview.id, LinkPreview.image_full_ref, LinkPreview.image_thumb_ref)
        .where(LinkPreview.expires_at < now)
        .order_by(LinkPreview.expires_at)
        .limit(max_batch)
    ).all()
    if not expired:
        return 0

    result = db.execute(delete(LinkPreview).where(LinkPreview.id.in_([r.id for r in expired])))
    db.commit()

    for r in expired:
        _delete_images(storage, (r.image_full_ref, r.image_thumb_ref))

    logger.info("link_preview_sweep", deleted=result.rowcount, max_batch=max_batch)
    return result.rowcount


# =============================================================================
# Provider embeds
# =============================================================================


def get_oembed(db: Session, url_hash: str) -> OembedCache | None:
    """Get the cached embed for a hash, or None. Does not check expiry."""
    return db.scalar(
        select(OembedCache)
        .where(OembedCache.url_hash == url_hash)
        .execution_options(populate_existing=True)
    )


def get_many_oembed(db: Session, url_hashes: Iterable[str]) -> list[OembedCache]:
    """Batch lookup. Absent hashes are omitted from the result."""
    hashes = set(url_hashes)
    if not hashes:
        return []
    stmt = (
        select(OembedCache)
        .where(OembedCache.url_hash.in_(hashes))
        .execution_options(populate_existing=True)
    )
    return list(db.scalars(stmt))


def upsert_oembed(db: Session, url_hash: str, fields: OembedFields) -> OembedCache:
    """Insert or patch the embed row for a hash (same discipline as upsert_preview)."""
    settings = get_settings()
    fetched_at, expires_at = _timestamps(
        fields.fetched_at, fields.expires_at, settings.oembed_ttl_s
    )

    values = asdict(fields)
    values.update(
        url_hash=url_hash,
        provider=OembedProvider(fields.provider).value,
        fetched_at=fetched_at,
        expires_at=expires_at,
    )

    stmt = _insert(db, OembedCache).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["url_hash"],
        set_={name: stmt.excluded[name] for name in values if name != "url_hash"},
    )

    db.execute(stmt)
    db.commit()

    row = get_oembed(db, url_hash)
    if row is None:
        return upsert_oembed(db, url_hash, fields)
    logger.info("oembed_cache_upserted", url_hash=url_hash, provider=values["provider"])
    return row


def sweep_expired_oembed(db: Session, now: datetime, max_batch: int) -> int:
    """Delete at most max_batch embed rows with expires_at < now.

    Returns:
        Number of rows deleted. Call again until it returns 0.
    """
    if max_batch < 1:
        raise ValueError("max_batch must be at least 1")

    expired_ids = list(
        db.scalars(
            select(OembedCache.id)
            .where(OembedCache.expires_at < now)
            .order_by(OembedCache.expires_at)
            .limit(max_batch)
        )
    )
    if not expired_ids:
        return 0

    result = db.execute(delete(OembedCache).where(OembedCache.id.in_(expired_ids)))
    db.commit()

    logger.info("oembed_cache_sweep", deleted=result.rowcount, max_batch=max_batch)
    return result.rowcount
