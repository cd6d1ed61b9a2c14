"""Shopify webhook endpoint: separate router so the raw body reaches the HMAC check."""

import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from feedsync.api.admin_auth import require_admin_key
from feedsync.config.settings import get_settings
from feedsync.database.db import get_db
from feedsync.database.models import WebhookEvent
from feedsync.services.credential_resolver import normalize_shop_input, resolve_shop_domain
from feedsync.services.webhook_intake import record_webhook

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])

RECENT_EVENTS_LIMIT = 20


@webhook_router.post("/shopify")
async def shopify_webhook(request: Request, db: Session = Depends(get_db)):
    """Record a Shopify webhook. No auth header: verified by Shopify's HMAC."""
    raw_body = await request.body()
    result = record_webhook(db, raw_body, request.headers, get_settings().shopify_webhook_secret)
    return {"ok": True, "duplicate": result.duplicate}


@webhook_router.get("/shopify/recent", dependencies=[Depends(require_admin_key)])
def recent_webhooks(shop: str | None = Query(default=None), db: Session = Depends(get_db)):
    """Last recorded events, newest first, optionally for one shop."""
    query = db.query(WebhookEvent)
    if shop:
        shop_domain = resolve_shop_domain(db, shop) or normalize_shop_input(shop)
        query = query.filter(WebhookEvent.shop_domain == shop_domain)

    events = query.order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc()).limit(RECENT_EVENTS_LIMIT).all()
    return {
        "ok": True,
        "events": [
            {
                "eventKey": e.event_key,
                "topic": e.topic,
                "shop": e.shop_domain,
                "status": e.status,
                "apiVersion": e.api_version,
                "triggeredAt": e.triggered_at,
                "receivedAt": e.received_at.isoformat() if e.received_at else None,
                "processedAt": e.processed_at.isoformat() if e.processed_at else None,
            }
            for e in events
        ],
    }
