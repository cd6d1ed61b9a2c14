"""
Sync orchestration: fetch -> enrich -> map -> render -> persist, per shop.

Two entry points:
- sync_single_tenant: on-demand, dirty-gated. Claims the dirty marker lease
  and the shop's run lock, so a second trigger for the same shop gets a
  ConflictError instead of a second concurrent run.
- sync_pending_tenants: batch over the oldest dirty markers. Shops whose run
  lock is held or whose marker lease is active are skipped, and one shop's
  failure never stops the rest of the batch.

A snapshot is only ever persisted whole. Every run leaves exactly one
SyncRun row, closed as ok or failed.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from feedsync.config.settings import get_settings
from feedsync.database.models import CatalogSnapshot, DirtyMarker, DisabledProduct, SyncRun, WebhookEvent
from feedsync.services.catalog_fetcher import fetch_all_products, fetch_collections
from feedsync.services.credential_resolver import ShopCredentials, require_credentials, resolve_shop_domain
from feedsync.services.dirty_tracker import (
    claim_marker,
    clear_marker,
    defer_marker,
    lease_is_active,
    list_pending,
    release_marker,
)
from feedsync.services.errors import ConflictError, FeedSyncError, NotFoundError, StorageError
from feedsync.services.feed_csv import render_feed_csv
from feedsync.services.feed_mapper import map_catalog
from feedsync.services.shopify_client import ShopifyClient
from feedsync.services.tenant_locks import make_holder_id, tenant_run_lock

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 2000
ABANDONED_RUN_ERROR = "Worker lost before the run finished"

ClientFactory = Callable[[str, str], ShopifyClient]


@dataclass
class SyncOutcome:
    shop_domain: str
    run_id: int
    products_count: int
    byte_size: int
    warnings: list[str] = field(default_factory=list)
    marker_cleared: bool = True

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "tenantKey": self.shop_domain,
            "runId": self.run_id,
            "productsCount": self.products_count,
            "byteSize": self.byte_size,
            "warnings": self.warnings,
        }


@dataclass
class TenantResult:
    shop_domain: str
    status: str  # processed | skipped | failed
    run_id: int | None = None
    products_count: int | None = None
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {"tenantKey": self.shop_domain, "status": self.status}
        if self.run_id is not None:
            data["runId"] = self.run_id
        if self.products_count is not None:
            data["productsCount"] = self.products_count
        if self.reason:
            data["reason"] = self.reason
        if self.warnings:
            data["warnings"] = self.warnings
        return data


@dataclass
class BatchOutcome:
    results: list[TenantResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def processed(self) -> int:
        return self._count("processed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def failed(self) -> int:
        return self._count("failed")

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


def open_client(shop_domain: str, access_token: str) -> ShopifyClient:
    return ShopifyClient(shop_domain, access_token)


# --- Single shop ---

def sync_single_tenant(
    db: Session,
    shop_or_alias: str,
    client_factory: ClientFactory | None = None,
) -> SyncOutcome:
    """Sync one dirty shop now.

    Raises NotFoundError for unknown or uninstalled shops, ConflictError when
    the shop is not dirty or a sync is already running for it.
    """
    settings = get_settings()
    shop_domain = resolve_shop_domain(db, shop_or_alias)
    if not shop_domain:
        raise NotFoundError(f"Unknown shop or alias: {shop_or_alias}")

    holder = make_holder_id()
    claim_marker(db, shop_domain, holder, settings.sync_lease_ttl_minutes)
    try:
        with tenant_run_lock(db, shop_domain, holder, settings.sync_lease_ttl_minutes) as acquired:
            if not acquired:
                raise ConflictError(f"Sync already in progress for {shop_domain}")
            creds = require_credentials(db, shop_domain)
            return run_sync(db, creds, trigger="single", client_factory=client_factory)
    finally:
        _release_marker_lease(db, shop_domain, holder)


def _release_marker_lease(db: Session, shop_domain: str, holder: str) -> None:
    try:
        if db.in_transaction():
            db.rollback()
        release_marker(db, shop_domain, holder)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not release marker lease for %s; it will expire", shop_domain)


# --- Batch ---

def sync_pending_tenants(
    db: Session,
    limit: int | None = None,
    client_factory: ClientFactory | None = None,
) -> BatchOutcome:
    settings = get_settings()
    limit = limit or settings.batch_sync_default_limit
    # Plain strings: the marker rows expire on every commit below
    shop_domains = [m.shop_domain for m in list_pending(db, limit)]
    holder = make_holder_id()

    outcome = BatchOutcome()
    for shop_domain in shop_domains:
        outcome.results.append(_sync_pending_tenant(db, shop_domain, holder, client_factory))

    logger.info(
        "Batch sync done: %d processed, %d skipped, %d failed",
        outcome.processed, outcome.skipped, outcome.failed,
    )
    return outcome


def _sync_pending_tenant(
    db: Session,
    shop_domain: str,
    holder: str,
    client_factory: ClientFactory | None,
) -> TenantResult:
    settings = get_settings()
    with tenant_run_lock(db, shop_domain, holder, settings.sync_lease_ttl_minutes) as acquired:
        if not acquired:
            return TenantResult(shop_domain, "skipped", reason="run lock held")

        marker = db.get(DirtyMarker, shop_domain, populate_existing=True)
        if marker is None:
            return TenantResult(shop_domain, "skipped", reason="not dirty")
        if lease_is_active(marker):
            return TenantResult(shop_domain, "skipped", reason="lease held")

        try:
            creds = require_credentials(db, shop_domain)
            result = run_sync(db, creds, trigger="batch", client_factory=client_factory)
        except FeedSyncError as exc:
            logger.warning("Batch sync failed for %s: %s", shop_domain, exc.message)
            _back_off(db, shop_domain)
            return TenantResult(shop_domain, "failed", reason=exc.message)
        except Exception as exc:
            logger.exception("Batch sync crashed for %s", shop_domain)
            _back_off(db, shop_domain)
            return TenantResult(shop_domain, "failed", reason=str(exc) or exc.__class__.__name__)

        return TenantResult(
            shop_domain,
            "processed",
            run_id=result.run_id,
            products_count=result.products_count,
            warnings=result.warnings,
        )


def _back_off(db: Session, shop_domain: str) -> None:
    """Rotate a failing shop out of the batch window for a while."""
    until = datetime.utcnow() + timedelta(minutes=get_settings().batch_retry_backoff_minutes)
    try:
        if db.in_transaction():
            db.rollback()
        defer_marker(db, shop_domain, until)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not defer dirty marker for %s", shop_domain)


# --- Pipeline ---

def run_sync(
    db: Session,
    creds: ShopCredentials,
    trigger: str = "single",
    client_factory: ClientFactory | None = None,
) -> SyncOutcome:
    """One full run for a shop whose run lock the caller already holds."""
    settings = get_settings()
    client_factory = client_factory or open_client
    shop_domain = creds.shop_domain
    started_at = datetime.utcnow()

    try:
        run = SyncRun(shop_domain=shop_domain, trigger=trigger, status="running", started_at=started_at)
        db.add(run)
        db.commit()
        run_id = run.id
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Could not open sync run for %s", shop_domain)
        raise StorageError("Failed to record sync run") from exc

    logger.info("Sync run %d started for %s (%s)", run_id, shop_domain, trigger)

    try:
        with client_factory(shop_domain, creds.access_token) as client:
            products = fetch_all_products(client, settings.shopify_page_size)
            enrichment = fetch_collections(
                client,
                [p.get("id") for p in products],
                settings.collections_batch_size,
            )

        disabled = _disabled_product_ids(db, shop_domain)
        if disabled:
            products = [p for p in products if _product_id(p) not in disabled]

        collections = {pid: enrichment.titles_for(pid) for pid in enrichment.collections}
        content = render_feed_csv(map_catalog(products, collections))
    except Exception as exc:
        db.rollback()
        _close_run(db, run_id, "failed", error=_error_text(exc))
        logger.warning("Sync run %d failed for %s: %s", run_id, shop_domain, exc)
        raise

    byte_size = len(content.encode("utf-8"))
    warnings = enrichment.warnings
    now = datetime.utcnow()

    try:
        _upsert_snapshot(db, shop_domain, content, len(products), byte_size, now)
        events = _mark_events_processed(db, shop_domain, started_at, now)
        cleared = clear_marker(db, shop_domain, started_at)
        _finish_run(db, run_id, "ok", products_count=len(products), byte_size=byte_size, warnings=warnings)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Persisting snapshot failed for %s (run %d)", shop_domain, run_id)
        _close_run(db, run_id, "failed", error=_error_text(exc))
        raise StorageError(f"Failed to persist snapshot for {shop_domain}") from exc

    if not cleared:
        logger.info("%s was re-dirtied during run %d; marker kept", shop_domain, run_id)
    logger.info(
        "Sync run %d ok for %s: %d products, %d bytes, %d event(s) processed, %d warning(s)",
        run_id, shop_domain, len(products), byte_size, events, len(warnings),
    )
    return SyncOutcome(
        shop_domain=shop_domain,
        run_id=run_id,
        products_count=len(products),
        byte_size=byte_size,
        warnings=list(warnings),
        marker_cleared=cleared,
    )


def _product_id(product) -> int | None:
    try:
        return int(product.get("id"))
    except (AttributeError, TypeError, ValueError):
        return None


def _disabled_product_ids(db: Session, shop_domain: str) -> set[int]:
    return set(
        db.scalars(select(DisabledProduct.product_id).where(DisabledProduct.shop_domain == shop_domain))
    )


def _upsert_snapshot(db: Session, shop_domain: str, content: str, products_count: int,
                     byte_size: int, now: datetime) -> None:
    snapshot = db.get(CatalogSnapshot, shop_domain)
    if snapshot is None:
        snapshot = CatalogSnapshot(shop_domain=shop_domain)
        db.add(snapshot)
    snapshot.content = content
    snapshot.products_count = products_count
    snapshot.byte_size = byte_size
    snapshot.generated_at = now
    db.flush()


def _mark_events_processed(db: Session, shop_domain: str, started_at: datetime, now: datetime) -> int:
    """Only events received before the run began are covered by its snapshot."""
    result = db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.shop_domain == shop_domain,
            WebhookEvent.status == "pending",
            WebhookEvent.received_at <= started_at,
        )
        .values(status="processed", processed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _finish_run(db: Session, run_id: int, status: str, error: str | None = None,
                products_count: int | None = None, byte_size: int | None = None,
                warnings: list[str] | None = None) -> None:
    run = db.get(SyncRun, run_id)
    if run is None or run.status != "running":
        return
    run.status = status
    run.finished_at = datetime.utcnow()
    run.error = error
    if products_count is not None:
        run.products_count = products_count
    if byte_size is not None:
        run.byte_size = byte_size
    if warnings:
        run.warnings = "\n".join(warnings)


def _close_run(db: Session, run_id: int, status: str, error: str | None = None) -> None:
    _finish_run(db, run_id, status, error=error)
    db.commit()


def _error_text(exc: Exception) -> str:
    text = exc.message if isinstance(exc, FeedSyncError) else (str(exc) or exc.__class__.__name__)
    body = getattr(exc, "body", "")
    if body:
        text = f"{text}: {body}"
    return text[:MAX_ERROR_CHARS]


def fail_abandoned_runs(db: Session, older_than_minutes: int, now: datetime | None = None) -> int:
    """Close ``running`` rows started more than a lease TTL ago as failed. Commits."""
    now = now or datetime.utcnow()
    result = db.execute(
        update(SyncRun)
        .where(SyncRun.status == "running", SyncRun.started_at < now - timedelta(minutes=older_than_minutes))
        .values(status="failed", finished_at=now, error=ABANDONED_RUN_ERROR)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning("Closed %d abandoned sync run(s)", result.rowcount)
    return result.rowcount
