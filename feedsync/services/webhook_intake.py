"""Shopify webhook intake: verify, record idempotently, mark the shop dirty.

Security contract:
- The HMAC check runs on the raw bytes before any JSON parsing or write
- hmac.compare_digest() for the comparison (constant time)
- Missing secret -> verification always fails (fail-closed)

Intake never calls Shopify and never waits on a sync. The event row, the
dirty marker and the soft-delete bookkeeping commit in one transaction, so a
storage failure leaves nothing behind and Shopify's redelivery starts clean.
"""

import base64
import hashlib
import hmac
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from feedsync.database.models import DisabledProduct, WebhookEvent
from feedsync.services.dirty_tracker import upsert_marker
from feedsync.services.errors import AuthenticationError, StorageError, ValidationError

logger = logging.getLogger(__name__)

HMAC_HEADER = "x-shopify-hmac-sha256"
TOPIC_HEADER = "x-shopify-topic"
SHOP_HEADER = "x-shopify-shop-domain"
WEBHOOK_ID_HEADER = "x-shopify-webhook-id"
EVENT_ID_HEADER = "x-shopify-event-id"
API_VERSION_HEADER = "x-shopify-api-version"
TRIGGERED_AT_HEADER = "x-shopify-triggered-at"

PRODUCT_DELETE_TOPIC = "products/delete"
PRODUCT_UPSERT_TOPICS = ("products/create", "products/update")


@dataclass(frozen=True)
class WebhookHeaders:
    hmac_signature: str | None
    topic: str | None
    shop_domain: str | None
    webhook_id: str | None
    event_id: str | None
    api_version: str | None
    triggered_at: str | None

    @classmethod
    def from_mapping(cls, headers: Mapping[str, str]) -> "WebhookHeaders":
        lowered = {k.lower(): v for k, v in headers.items()}

        def get(name: str) -> str | None:
            value = (lowered.get(name) or "").strip()
            return value or None

        shop = get(SHOP_HEADER)
        return cls(
            hmac_signature=get(HMAC_HEADER),
            topic=get(TOPIC_HEADER),
            shop_domain=shop.lower() if shop else None,
            webhook_id=get(WEBHOOK_ID_HEADER),
            event_id=get(EVENT_ID_HEADER),
            api_version=get(API_VERSION_HEADER),
            triggered_at=get(TRIGGERED_AT_HEADER),
        )

    @property
    def event_key(self) -> str | None:
        return self.event_id or self.webhook_id


@dataclass(frozen=True)
class IntakeResult:
    event_key: str
    shop_domain: str
    topic: str
    duplicate: bool


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify Shopify's base64 HMAC-SHA256 over the raw request body."""
    if not secret:
        logger.warning("SHOPIFY_WEBHOOK_SECRET not set; rejecting webhook")
        return False
    if not signature_header:
        return False
    return hmac.compare_digest(compute_signature(raw_body, secret), signature_header)


def record_webhook(
    db: Session,
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: str,
) -> IntakeResult:
    meta = WebhookHeaders.from_mapping(headers)

    if not verify_signature(raw_body, meta.hmac_signature, secret):
        raise AuthenticationError("Invalid webhook signature")

    missing = [
        name
        for name, value in (
            (TOPIC_HEADER, meta.topic),
            (SHOP_HEADER, meta.shop_domain),
            (WEBHOOK_ID_HEADER, meta.webhook_id),
        )
        if not value
    ]
    if missing:
        raise ValidationError(f"Missing required Shopify headers: {', '.join(missing)}")

    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON body")

    now = datetime.utcnow()
    event = WebhookEvent(
        event_key=meta.event_key,
        event_id=meta.event_id,
        webhook_id=meta.webhook_id,
        topic=meta.topic,
        shop_domain=meta.shop_domain,
        api_version=meta.api_version,
        triggered_at=meta.triggered_at,
        payload=json.dumps(payload),
        status="pending",
        received_at=now,
    )

    try:
        db.add(event)
        try:
            db.flush()
        except IntegrityError:
            # Shopify redelivery of an event we already hold
            db.rollback()
            logger.info(
                "Skipping duplicate webhook %s (%s) for %s",
                meta.event_key, meta.topic, meta.shop_domain,
            )
            return IntakeResult(meta.event_key, meta.shop_domain, meta.topic, duplicate=True)

        upsert_marker(db, meta.shop_domain, now)
        _apply_product_state(db, meta.shop_domain, meta.topic, payload)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to record webhook %s for %s", meta.event_key, meta.shop_domain)
        raise StorageError("Failed to record webhook") from exc

    logger.info("Recorded webhook %s (%s) for %s", meta.event_key, meta.topic, meta.shop_domain)
    return IntakeResult(meta.event_key, meta.shop_domain, meta.topic, duplicate=False)


def _apply_product_state(db: Session, shop_domain: str, topic: str, payload) -> None:
    """Soft-disable deleted products; re-enable them on create/update."""
    if topic != PRODUCT_DELETE_TOPIC and topic not in PRODUCT_UPSERT_TOPICS:
        return

    try:
        product_id = int(payload.get("id"))
    except (AttributeError, TypeError, ValueError):
        logger.warning("Webhook %s for %s carries no numeric product id", topic, shop_domain)
        return

    if topic == PRODUCT_DELETE_TOPIC:
        db.merge(DisabledProduct(shop_domain=shop_domain, product_id=product_id, disabled_at=datetime.utcnow()))
    else:
        db.execute(
            delete(DisabledProduct)
            .where(DisabledProduct.shop_domain == shop_domain, DisabledProduct.product_id == product_id)
            .execution_options(synchronize_session=False)
        )
