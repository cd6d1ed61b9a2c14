"""Housekeeping: expired lease reaper and sync run retention."""

import logging
from datetime import datetime, timedelta

from feedsync.celery_app import app
from feedsync.config.settings import get_settings
from feedsync.database.db import SessionLocal
from feedsync.database.models import SyncRun
from feedsync.services.dirty_tracker import reap_expired_marker_leases
from feedsync.services.sync_orchestrator import fail_abandoned_runs
from feedsync.services.tenant_locks import reap_expired_leases as reap_expired_run_leases

logger = logging.getLogger(__name__)


@app.task(bind=True, max_retries=1, default_retry_delay=30)
def reap_expired_leases(self):
    """Clean up after crashed workers.

    Clears expired marker leases and run-lock lease rows, and closes sync runs
    that have been running for longer than the lease TTL as failed.
    """
    db = SessionLocal()
    try:
        markers = reap_expired_marker_leases(db)
        leases = reap_expired_run_leases(db)
        runs = fail_abandoned_runs(db, get_settings().sync_lease_ttl_minutes)
        return {"marker_leases": markers, "run_leases": leases, "abandoned_runs": runs}
    except Exception as exc:
        logger.exception("Lease reaper failed")
        raise self.retry(exc=exc)
    finally:
        db.close()


@app.task(bind=True, max_retries=1, default_retry_delay=300)
def prune_sync_runs(self):
    """Delete closed sync runs older than SYNC_RUN_RETENTION_DAYS (0 keeps all)."""
    retention_days = get_settings().sync_run_retention_days
    if retention_days <= 0:
        return {"deleted": 0, "retention_days": retention_days}

    cutoff = datetime.utcnow() - timedelta(days=retention_days)
    db = SessionLocal()
    try:
        deleted = (
            db.query(SyncRun)
            .filter(SyncRun.status != "running", SyncRun.started_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info("Pruned %d sync run(s) older than %d days", deleted, retention_days)
        return {"deleted": deleted, "retention_days": retention_days}
    except Exception as exc:
        db.rollback()
        logger.exception("Sync run pruning failed")
        raise self.retry(exc=exc)
    finally:
        db.close()
