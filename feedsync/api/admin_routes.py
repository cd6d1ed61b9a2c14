"""Operator endpoints: sync triggers, run history, webhook subscriptions."""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from feedsync.api.admin_auth import require_admin_key
from feedsync.config.settings import get_settings
from feedsync.database.db import get_db
from feedsync.database.models import SyncRun
from feedsync.services import sync_orchestrator
from feedsync.services.credential_resolver import require_credentials, resolve_shop_domain
from feedsync.services.errors import NotFoundError, ValidationError
from feedsync.services.webhook_subscriptions import intake_address, register_webhooks

admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])

MAX_BATCH_LIMIT = 200
RECENT_RUNS_LIMIT = 50


# --- Response Models ---

class SyncResponse(BaseModel):
    ok: bool
    tenantKey: str
    runId: int
    productsCount: int
    byteSize: int
    warnings: list[str]


class TenantResultResponse(BaseModel):
    tenantKey: str
    status: str
    runId: int | None = None
    productsCount: int | None = None
    reason: str | None = None
    warnings: list[str] = []


class BatchSyncResponse(BaseModel):
    ok: bool
    processed: int
    skipped: int
    failed: int
    results: list[TenantResultResponse]


class SyncRunResponse(BaseModel):
    runId: int
    tenantKey: str
    trigger: str | None
    status: str
    startedAt: str | None
    finishedAt: str | None
    productsCount: int | None
    byteSize: int | None
    error: str | None
    warnings: list[str]


class SyncRunsResponse(BaseModel):
    ok: bool
    runs: list[SyncRunResponse]


# --- Endpoints ---

def _require_shop(shop: str | None) -> str:
    if not shop or not shop.strip():
        raise ValidationError("Missing ?shop=")
    return shop


def _run_to_response(run: SyncRun) -> SyncRunResponse:
    return SyncRunResponse(
        runId=run.id,
        tenantKey=run.shop_domain,
        trigger=run.trigger,
        status=run.status,
        startedAt=run.started_at.isoformat() if run.started_at else None,
        finishedAt=run.finished_at.isoformat() if run.finished_at else None,
        productsCount=run.products_count,
        byteSize=run.byte_size,
        error=run.error,
        warnings=run.warnings.split("\n") if run.warnings else [],
    )


@admin_router.post("/sync", response_model=SyncResponse)
def trigger_sync(shop: str | None = Query(default=None), db: Session = Depends(get_db)):
    """Sync one dirty shop now. 409 when it is not dirty or already syncing."""
    outcome = sync_orchestrator.sync_single_tenant(db, _require_shop(shop))
    return outcome.to_dict()


@admin_router.post("/sync/batch", response_model=BatchSyncResponse)
def trigger_batch_sync(
    limit: int | None = Query(default=None, ge=1, le=MAX_BATCH_LIMIT),
    db: Session = Depends(get_db),
):
    outcome = sync_orchestrator.sync_pending_tenants(db, limit or get_settings().batch_sync_default_limit)
    return outcome.to_dict()


@admin_router.get("/sync/runs", response_model=SyncRunsResponse)
def list_sync_runs(shop: str | None = Query(default=None), db: Session = Depends(get_db)):
    """Most recent sync runs, newest first."""
    query = db.query(SyncRun)
    if shop:
        shop_domain = resolve_shop_domain(db, shop)
        if not shop_domain:
            raise NotFoundError(f"Unknown shop or alias: {shop}")
        query = query.filter(SyncRun.shop_domain == shop_domain)

    runs = query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(RECENT_RUNS_LIMIT).all()
    return SyncRunsResponse(ok=True, runs=[_run_to_response(r) for r in runs])


# --- Webhook subscriptions ---

@admin_router.post("/shopify/webhooks/register")
def register_shop_webhooks(shop: str | None = Query(default=None), db: Session = Depends(get_db)):
    creds = require_credentials(db, _require_shop(shop))
    address = intake_address(get_settings().app_base_url)

    with sync_orchestrator.open_client(creds.shop_domain, creds.access_token) as client:
        result = register_webhooks(client, address)

    return {
        "ok": True,
        "inputShop": shop,
        "shopDomain": creds.shop_domain,
        "address": result.address,
        "already": result.already,
        "created": result.created,
    }


@admin_router.get("/shopify/webhooks/list")
def list_shop_webhooks(shop: str | None = Query(default=None), db: Session = Depends(get_db)):
    creds = require_credentials(db, _require_shop(shop))

    with sync_orchestrator.open_client(creds.shop_domain, creds.access_token) as client:
        webhooks = client.list_webhooks()

    return {"ok": True, "shopDomain": creds.shop_domain, "webhooks": webhooks}
