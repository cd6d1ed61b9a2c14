"""Register the catalog webhooks on a shop, pointing at our intake endpoint."""

import logging
from dataclasses import dataclass, field

from feedsync.services.errors import ValidationError
from feedsync.services.shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

WEBHOOK_TOPICS = (
    "products/create",
    "products/update",
    "products/delete",
    "inventory_levels/update",
)

INTAKE_PATH = "/webhooks/shopify"


@dataclass
class RegistrationResult:
    address: str
    already: list[dict] = field(default_factory=list)
    created: list[dict] = field(default_factory=list)


def intake_address(app_base_url: str) -> str:
    base = (app_base_url or "").strip().rstrip("/")
    if not base:
        raise ValidationError("APP_BASE_URL is not configured")
    return f"{base}{INTAKE_PATH}"


def register_webhooks(client: ShopifyClient, address: str) -> RegistrationResult:
    """Create whichever catalog topics are not yet subscribed at ``address``."""
    result = RegistrationResult(address=address)
    existing = [
        w for w in client.list_webhooks()
        if w.get("topic") in WEBHOOK_TOPICS and w.get("address") == address
    ]
    result.already = [{"id": w.get("id"), "topic": w.get("topic")} for w in existing]
    subscribed = {w.get("topic") for w in existing}

    for topic in WEBHOOK_TOPICS:
        if topic in subscribed:
            continue
        webhook = client.create_webhook(topic, address)
        result.created.append({"id": webhook.get("id"), "topic": webhook.get("topic", topic)})
        logger.info("Subscribed %s to %s at %s", client.shop_domain, topic, address)

    return result
