"""Shared test configuration."""

import json
import sys
import time
from pathlib import Path

import pytest

# Ensure the project root is in the path so imports work
project_root = Path(__file__).parent.parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def feedsync_settings(monkeypatch):
    """Known keys for every test; settings are re-read per test."""
    from feedsync.config.settings import get_settings

    monkeypatch.setenv("SHOPIFY_WEBHOOK_SECRET", "whsec_test_secret")
    monkeypatch.setenv("ADMIN_KEY", "admin-test-key")
    monkeypatch.setenv("EXPORT_KEY", "export-test-key")
    monkeypatch.setenv("APP_BASE_URL", "https://feed.example.com")
    monkeypatch.setenv("ENVIRONMENT", "development")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


class FakeShopify:
    """httpx.MockTransport handler standing in for one shop's Admin API.

    Products are served ``page_size`` at a time with Shopify-style Link
    headers. ``fail_page`` answers that page index with ``fail_status``;
    ``delay`` slows every product page down.
    """

    def __init__(self, products=None, page_size=2, collections=None, fail_page=None,
                 fail_status=404, graphql_status=200, webhooks=None, delay=0.0):
        self.products = products or []
        self.page_size = page_size
        self.collections = collections or {}
        self.fail_page = fail_page
        self.fail_status = fail_status
        self.graphql_status = graphql_status
        self.webhooks = list(webhooks or [])
        self.delay = delay
        self.requests = []

    def handler(self, request):
        import httpx

        self.requests.append(request)
        path = request.url.path

        if path.endswith("/products.json"):
            if self.delay:
                time.sleep(self.delay)
            cursor = request.url.params.get("page_info")
            page = int(cursor.split("-")[1]) if cursor else 0
            if page == self.fail_page:
                return httpx.Response(self.fail_status, text="upstream says no")
            start = page * self.page_size
            headers = {}
            if start + self.page_size < len(self.products):
                next_url = f"https://{request.url.host}{path}?limit={self.page_size}&page_info=page-{page + 1}"
                headers["Link"] = f'<{next_url}>; rel="next"'
            return httpx.Response(200, json={"products": self.products[start:start + self.page_size]}, headers=headers)

        if path.endswith("/graphql.json"):
            if self.graphql_status != 200:
                return httpx.Response(self.graphql_status, json={"errors": "unavailable"})
            ids = json.loads(request.content)["variables"]["ids"]
            nodes = []
            for gid in ids:
                pid = int(gid.rsplit("/", 1)[1])
                nodes.append({
                    "legacyResourceId": str(pid),
                    "collections": {"nodes": [
                        {"title": title}
                        for title in self.collections.get(pid, [])
                    ]},
                })
            return httpx.Response(200, json={"data": {"nodes": nodes}})

        if path.endswith("/webhooks.json"):
            if request.method == "GET":
                return httpx.Response(200, json={"webhooks": self.webhooks})
            webhook = {"id": 9000 + len(self.webhooks), **json.loads(request.content)["webhook"]}
            self.webhooks.append(webhook)
            return httpx.Response(201, json={"webhook": webhook})

        return httpx.Response(404, json={"errors": "Not Found"})

    def requests_to(self, suffix):
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def client(self, shop_domain, access_token):
        import httpx
        from feedsync.services.shopify_client import ShopifyClient

        return ShopifyClient(shop_domain, access_token, transport=httpx.MockTransport(self.handler))


def make_product(product_id, title="Blue Mug", variants=2, **extra):
    product = {
        "id": product_id,
        "title": title,
        "body_html": "<p>A sturdy mug.</p>",
        "vendor": "Acme",
        "tags": "a, b, c",
        "options": [{"name": "Size"}],
        "images": [{"id": product_id * 10, "src": f"https://cdn.example.com/{product_id}.jpg", "position": 1}],
        "variants": [
            {
                "id": product_id * 100 + i,
                "option1": f"S{i}",
                "sku": f"SKU-{product_id}-{i}",
                "price": "12.50",
                "weight": 0.5,
                "inventory_management": "shopify",
                "inventory_quantity": 3,
            }
            for i in range(variants)
        ],
    }
    product.update(extra)
    return product


@pytest.fixture
def fake_shopify():
    return FakeShopify


@pytest.fixture
def product_factory():
    return make_product
