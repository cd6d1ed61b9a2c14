"""Celery tasks that run catalog syncs outside the request cycle."""

import logging

from feedsync.celery_app import app
from feedsync.database.db import SessionLocal
from feedsync.services.errors import ConflictError, NotFoundError
from feedsync.services.sync_orchestrator import sync_pending_tenants, sync_single_tenant

logger = logging.getLogger(__name__)


@app.task(bind=True, max_retries=1, default_retry_delay=60)
def sync_pending_shops(self, limit=None):
    """Batch-sync the oldest dirty shops.

    Runs on beat schedule. Per-shop failures are recorded in the result and
    on their SyncRun rows; only a failure of the batch itself is retried.
    """
    db = SessionLocal()
    try:
        outcome = sync_pending_tenants(db, limit)
        return outcome.to_dict()
    except Exception as exc:
        logger.exception("Batch sync task failed")
        raise self.retry(exc=exc)
    finally:
        db.close()


@app.task(bind=True, max_retries=3, default_retry_delay=120)
def sync_shop(self, shop: str):
    """Sync one dirty shop on demand."""
    db = SessionLocal()
    try:
        outcome = sync_single_tenant(db, shop)
        return {"status": "processed", **outcome.to_dict()}
    except ConflictError as exc:
        # Not dirty, or another worker is already on it
        logger.info("Sync for %s skipped: %s", shop, exc.message)
        return {"status": "skipped", "shop": shop, "reason": exc.message}
    except NotFoundError as exc:
        logger.warning("Sync for %s not possible: %s", shop, exc.message)
        return {"status": "not_found", "shop": shop, "reason": exc.message}
    except Exception as exc:
        logger.exception("Sync task failed for %s", shop)
        raise self.retry(exc=exc)
    finally:
        db.close()
