"""Baseline: shops, webhook log, dirty markers, leases, sync runs, snapshots.

Revision ID: 0001
Revises: None
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "shops",
        sa.Column("shop_domain", sa.String(255), primary_key=True),
        sa.Column("access_token", sa.String(255)),
        sa.Column("scopes", sa.Text()),
        sa.Column("installed_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime()),
    )

    op.create_table(
        "shop_aliases",
        sa.Column("alias", sa.String(255), primary_key=True),
        sa.Column("shop_domain", sa.String(255), sa.ForeignKey("shops.shop_domain"), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime()),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("event_key", sa.String(255), unique=True, nullable=False),
        sa.Column("event_id", sa.String(255)),
        sa.Column("webhook_id", sa.String(255), nullable=False),
        sa.Column("topic", sa.String(100), nullable=False),
        sa.Column("shop_domain", sa.String(255), nullable=False),
        sa.Column("api_version", sa.String(20)),
        sa.Column("triggered_at", sa.String(64)),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20)),
        sa.Column("received_at", sa.DateTime()),
        sa.Column("processed_at", sa.DateTime()),
    )
    op.create_index("ix_webhook_events_shop_status", "webhook_events", ["shop_domain", "status"])
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])

    op.create_table(
        "dirty_markers",
        sa.Column("shop_domain", sa.String(255), primary_key=True),
        sa.Column("dirty_at", sa.DateTime(), nullable=False, index=True),
        sa.Column("locked_by", sa.String(255)),
        sa.Column("locked_at", sa.DateTime()),
        sa.Column("lease_expires_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime()),
    )

    op.create_table(
        "tenant_leases",
        sa.Column("shop_domain", sa.String(255), primary_key=True),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("acquired_at", sa.DateTime()),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("shop_domain", sa.String(255), nullable=False, index=True),
        sa.Column("trigger", sa.String(20)),
        sa.Column("status", sa.String(20)),
        sa.Column("started_at", sa.DateTime()),
        sa.Column("finished_at", sa.DateTime()),
        sa.Column("products_count", sa.Integer()),
        sa.Column("byte_size", sa.Integer()),
        sa.Column("error", sa.Text()),
        sa.Column("warnings", sa.Text()),
    )

    op.create_table(
        "catalog_snapshots",
        sa.Column("shop_domain", sa.String(255), primary_key=True),
        sa.Column("generated_at", sa.DateTime()),
        sa.Column("products_count", sa.Integer()),
        sa.Column("byte_size", sa.Integer()),
        sa.Column("content", sa.Text(), nullable=False),
    )

    op.create_table(
        "disabled_products",
        sa.Column("shop_domain", sa.String(255), primary_key=True),
        sa.Column("product_id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("disabled_at", sa.DateTime()),
    )


def downgrade() -> None:
    op.drop_table("disabled_products")
    op.drop_table("catalog_snapshots")
    op.drop_table("sync_runs")
    op.drop_table("tenant_leases")
    op.drop_table("dirty_markers")
    op.drop_index("ix_webhook_events_received_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_shop_status", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("shop_aliases")
    op.drop_table("shops")
