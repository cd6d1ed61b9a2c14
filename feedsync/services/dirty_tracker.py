"""Per-shop "needs resync" markers.

A marker is upserted for every new webhook and deleted by a successful sync.
The single-shop sync path claims the marker as a lease (locked_by +
lease_expires_at); an expired lease can be claimed by anyone, and the
reaper task clears expired leases so a crashed worker never wedges a shop.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from feedsync.database.models import DirtyMarker, Shop
from feedsync.services.errors import ConflictError

logger = logging.getLogger(__name__)


def upsert_marker(db: Session, shop_domain: str, now: datetime) -> None:
    """Create the marker or refresh its dirty_at in one statement. Does not commit."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql_insert
    elif dialect == "sqlite":
        insert = sqlite_insert
    else:
        _upsert_with_savepoint(db, shop_domain, now)
        return

    stmt = insert(DirtyMarker).values(shop_domain=shop_domain, dirty_at=now, updated_at=now)
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=[DirtyMarker.shop_domain],
            set_={"dirty_at": stmt.excluded.dirty_at, "updated_at": stmt.excluded.updated_at},
        )
    )


def _upsert_with_savepoint(db: Session, shop_domain: str, now: datetime) -> None:
    if _refresh(db, shop_domain, now):
        return
    try:
        with db.begin_nested():
            db.add(DirtyMarker(shop_domain=shop_domain, dirty_at=now, updated_at=now))
    except IntegrityError:
        # Concurrent webhook created it first
        _refresh(db, shop_domain, now)


def mark_dirty(db: Session, shop_domain: str, now: datetime | None = None) -> None:
    """Create the marker or refresh its dirty_at. Commits."""
    upsert_marker(db, shop_domain, now or datetime.utcnow())
    db.commit()


def _refresh(db: Session, shop_domain: str, now: datetime) -> bool:
    result = db.execute(
        update(DirtyMarker)
        .where(DirtyMarker.shop_domain == shop_domain)
        .values(dirty_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def list_pending(db: Session, limit: int, now: datetime | None = None) -> list[DirtyMarker]:
    """Oldest markers first, for installed shops that are not backing off."""
    now = now or datetime.utcnow()
    return (
        db.query(DirtyMarker)
        .join(Shop, Shop.shop_domain == DirtyMarker.shop_domain)
        .filter(
            Shop.access_token.is_not(None),
            Shop.access_token != "",
            or_(DirtyMarker.retry_after.is_(None), DirtyMarker.retry_after <= now),
        )
        .order_by(DirtyMarker.dirty_at.asc(), DirtyMarker.shop_domain.asc())
        .limit(limit)
        .all()
    )


def defer_marker(db: Session, shop_domain: str, until: datetime) -> None:
    """Keep the marker out of batches until ``until``. Commits."""
    db.execute(
        update(DirtyMarker)
        .where(DirtyMarker.shop_domain == shop_domain)
        .values(retry_after=until, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def lease_is_active(marker: DirtyMarker, now: datetime | None = None) -> bool:
    now = now or datetime.utcnow()
    return (
        marker.locked_by is not None
        and marker.lease_expires_at is not None
        and marker.lease_expires_at > now
    )


def claim_marker(db: Session, shop_domain: str, holder: str, ttl_minutes: int) -> DirtyMarker:
    """Take the marker lease or raise ConflictError. Commits."""
    now = datetime.utcnow()
    result = db.execute(
        update(DirtyMarker)
        .where(
            DirtyMarker.shop_domain == shop_domain,
            or_(
                DirtyMarker.locked_by.is_(None),
                DirtyMarker.lease_expires_at.is_(None),
                DirtyMarker.lease_expires_at <= now,
            ),
        )
        .values(
            locked_by=holder,
            locked_at=now,
            lease_expires_at=now + timedelta(minutes=ttl_minutes),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    marker = db.get(DirtyMarker, shop_domain)
    if result.rowcount == 1 and marker is not None:
        return marker
    if marker is None:
        raise ConflictError(f"Shop is not dirty: {shop_domain}")
    raise ConflictError(f"Sync already in progress for {shop_domain}")


def release_marker(db: Session, shop_domain: str, holder: str) -> None:
    """Drop our lease if the marker still exists. Commits."""
    db.execute(
        update(DirtyMarker)
        .where(DirtyMarker.shop_domain == shop_domain, DirtyMarker.locked_by == holder)
        .values(locked_by=None, locked_at=None, lease_expires_at=None, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def clear_marker(db: Session, shop_domain: str, dirty_before: datetime) -> bool:
    """Delete the marker unless a webhook re-dirtied it after ``dirty_before``.

    A surviving marker has its batch back-off cleared. Does not commit; the
    orchestrator commits it with the snapshot.
    """
    result = db.execute(
        delete(DirtyMarker)
        .where(DirtyMarker.shop_domain == shop_domain, DirtyMarker.dirty_at <= dirty_before)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount > 0:
        return True
    db.execute(
        update(DirtyMarker)
        .where(DirtyMarker.shop_domain == shop_domain)
        .values(retry_after=None)
        .execution_options(synchronize_session=False)
    )
    return False


def reap_expired_marker_leases(db: Session, now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    result = db.execute(
        update(DirtyMarker)
        .where(DirtyMarker.locked_by.is_not(None), DirtyMarker.lease_expires_at <= now)
        .values(locked_by=None, locked_at=None, lease_expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning("Reaped %d expired dirty marker lease(s)", result.rowcount)
    return result.rowcount
