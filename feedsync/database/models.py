from datetime import datetime
from sqlalchemy import String, Integer, BigInteger, DateTime, Text, Index, ForeignKey
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Shop(Base):
    """Installed tenant and its current Admin API access token."""
    __tablename__ = "shops"

    shop_domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    # NULL once the app is uninstalled; such a shop cannot be synced
    access_token: Mapped[str | None] = mapped_column(String(255))
    scopes: Mapped[str | None] = mapped_column(Text)
    installed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class ShopAlias(Base):
    """Alternate name (custom domain, short name) resolving to a shop."""
    __tablename__ = "shop_aliases"

    alias: Mapped[str] = mapped_column(String(255), primary_key=True)
    shop_domain: Mapped[str] = mapped_column(
        String(255), ForeignKey("shops.shop_domain"), index=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class WebhookEvent(Base):
    """Immutable log of received Shopify webhooks."""
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # X-Shopify-Event-Id when sent, else X-Shopify-Webhook-Id
    event_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(255))
    webhook_id: Mapped[str] = mapped_column(String(255), nullable=False)
    topic: Mapped[str] = mapped_column(String(100), nullable=False)
    shop_domain: Mapped[str] = mapped_column(String(255), nullable=False)
    api_version: Mapped[str | None] = mapped_column(String(20))
    triggered_at: Mapped[str | None] = mapped_column(String(64))
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | processed
    received_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_webhook_events_shop_status", "shop_domain", "status"),
        Index("ix_webhook_events_received_at", "received_at"),
    )


class DirtyMarker(Base):
    """Pending-resync marker per shop; also the lease for single-shop syncs."""
    __tablename__ = "dirty_markers"

    shop_domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    dirty_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    locked_by: Mapped[str | None] = mapped_column(String(255))
    locked_at: Mapped[datetime | None] = mapped_column(DateTime)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    # Set after a failed batch sync; batches skip the marker until then
    retry_after: Mapped[datetime | None] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class TenantLease(Base):
    """Run lock lease for databases without session advisory locks."""
    __tablename__ = "tenant_leases"

    shop_domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class SyncRun(Base):
    """Append-only audit row for one fetch -> map -> persist attempt."""
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_domain: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), default="single")  # single | batch
    status: Mapped[str] = mapped_column(String(20), default="running")  # running | ok | failed
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime)
    products_count: Mapped[int | None] = mapped_column(Integer)
    byte_size: Mapped[int | None] = mapped_column(Integer)
    error: Mapped[str | None] = mapped_column(Text)
    warnings: Mapped[str | None] = mapped_column(Text)


class CatalogSnapshot(Base):
    """Latest generated feed for a shop. Replaced in place on every good run."""
    __tablename__ = "catalog_snapshots"

    shop_domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    products_count: Mapped[int] = mapped_column(Integer, default=0)
    byte_size: Mapped[int] = mapped_column(Integer, default=0)
    content: Mapped[str] = mapped_column(Text, nullable=False)


class DisabledProduct(Base):
    """Soft-delete tombstone from a products/delete webhook."""
    __tablename__ = "disabled_products"

    shop_domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    product_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    disabled_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
