"""Per-shop run lock: at most one sync run per shop at any instant.

PostgreSQL uses a session-scoped advisory lock on a dedicated connection,
released explicitly or when that session ends. Other databases (SQLite in
development and tests) use a TenantLease row with an expiry that the reaper
task clears.
"""

import hashlib
import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import delete, insert, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from feedsync.database.models import TenantLease

logger = logging.getLogger(__name__)


def make_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def advisory_key(shop_domain: str) -> int:
    """Stable signed 64-bit key for pg_try_advisory_lock."""
    digest = hashlib.blake2b(shop_domain.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class AdvisoryLock:
    def __init__(self, engine: Engine, shop_domain: str):
        self.engine = engine
        self.shop_domain = shop_domain
        self.key = advisory_key(shop_domain)
        self._conn = None

    def acquire(self) -> bool:
        conn = self.engine.connect()
        acquired = conn.execute(
            text("SELECT pg_try_advisory_lock(:key)"), {"key": self.key}
        ).scalar()
        conn.commit()
        if not acquired:
            conn.close()
            return False
        self._conn = conn
        return True

    def release(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self.key})
            self._conn.commit()
        except SQLAlchemyError:
            # Dropping the session releases every advisory lock it holds
            logger.exception("Advisory unlock failed for %s; invalidating connection", self.shop_domain)
            self._conn.invalidate()
        finally:
            self._conn.close()
            self._conn = None


class LeaseLock:
    def __init__(self, db: Session, shop_domain: str, holder: str, ttl_minutes: int):
        self.db = db
        self.shop_domain = shop_domain
        self.holder = holder
        self.ttl = timedelta(minutes=ttl_minutes)

    def acquire(self) -> bool:
        now = datetime.utcnow()
        try:
            self.db.execute(
                insert(TenantLease).values(
                    shop_domain=self.shop_domain,
                    holder=self.holder,
                    acquired_at=now,
                    expires_at=now + self.ttl,
                )
            )
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()

        # Row exists; take it over only if its lease has expired
        result = self.db.execute(
            update(TenantLease)
            .where(TenantLease.shop_domain == self.shop_domain, TenantLease.expires_at <= now)
            .values(holder=self.holder, acquired_at=now, expires_at=now + self.ttl)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def release(self) -> None:
        self.db.execute(
            delete(TenantLease)
            .where(TenantLease.shop_domain == self.shop_domain, TenantLease.holder == self.holder)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()


def _make_lock(db: Session, shop_domain: str, holder: str, ttl_minutes: int):
    bind = db.get_bind()
    if bind.dialect.name == "postgresql":
        return AdvisoryLock(bind.engine, shop_domain)
    return LeaseLock(db, shop_domain, holder, ttl_minutes)


@contextmanager
def tenant_run_lock(db: Session, shop_domain: str, holder: str, ttl_minutes: int):
    """Yield True if this worker holds the shop's run lock, else False.

    The lock is released on every exit path.
    """
    lock = _make_lock(db, shop_domain, holder, ttl_minutes)
    acquired = lock.acquire()
    if not acquired:
        logger.info("Run lock for %s is held elsewhere", shop_domain)
    try:
        yield acquired
    finally:
        if acquired:
            if db.in_transaction():
                db.rollback()
            lock.release()


def reap_expired_leases(db: Session, now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    result = db.execute(
        delete(TenantLease)
        .where(TenantLease.expires_at <= now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning("Reaped %d expired tenant lease(s)", result.rowcount)
    return result.rowcount
