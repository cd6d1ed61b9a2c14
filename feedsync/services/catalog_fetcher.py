"""
Full-catalog fetch for one shop, plus best-effort collection enrichment.

Products come from the REST ``/products.json`` endpoint using cursor
pagination: the ``Link: <...page_info=...>; rel="next"`` header carries the
opaque cursor for the next page and is absent on the last page. Any failing
page aborts the whole fetch, so callers never see a partial catalog.

Collection enrichment uses the GraphQL ``nodes(ids:)`` bulk query. It never
raises; failed batches leave empty collection lists and a warning on the
returned EnrichmentResult.
"""

import logging
from dataclasses import dataclass, field

import httpx

from feedsync.services.errors import UpstreamError, ValidationError
from feedsync.services.shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

PRODUCTS_PATH = "/products.json"
MAX_PAGE_SIZE = 250
DEFAULT_COLLECTIONS_BATCH_SIZE = 50

PRODUCT_COLLECTIONS_QUERY = """
query ProductCollections($ids: [ID!]!) {
  nodes(ids: $ids) {
    ... on Product {
      legacyResourceId
      collections(first: 25) {
        nodes {
          title
        }
      }
    }
  }
}
"""


@dataclass
class EnrichmentResult:
    collections: dict[int, list[str]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def titles_for(self, product_id) -> list[str]:
        try:
            return list(self.collections.get(int(product_id), []))
        except (TypeError, ValueError):
            return []


def next_page_cursor(response: httpx.Response) -> str | None:
    """page_info of the rel="next" link, or None on the last page."""
    link = response.links.get("next")
    if not link or not link.get("url"):
        return None
    return httpx.URL(link["url"]).params.get("page_info") or None


def fetch_all_products(client: ShopifyClient, page_size: int = MAX_PAGE_SIZE) -> list[dict]:
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

    products: list[dict] = []
    cursor = None
    pages = 0

    while True:
        params = {"limit": page_size}
        if cursor:
            params["page_info"] = cursor

        resp = client.get(PRODUCTS_PATH, params=params)
        try:
            page = resp.json().get("products") or []
        except ValueError:
            raise UpstreamError("Shopify products page is not valid JSON", status=resp.status_code, body=resp.text)

        products.extend(page)
        pages += 1

        next_cursor = next_page_cursor(resp)
        if not next_cursor:
            break
        if next_cursor == cursor:
            raise UpstreamError(f"Shopify returned the same page cursor twice for {client.shop_domain}")
        cursor = next_cursor

    logger.info("Fetched %d products in %d page(s) for %s", len(products), pages, client.shop_domain)
    return products


def _unique_ids(product_ids) -> list[int]:
    seen: dict[int, None] = {}
    for raw in product_ids or []:
        try:
            seen.setdefault(int(raw), None)
        except (TypeError, ValueError):
            continue
    return list(seen)


def fetch_collections(
    client: ShopifyClient,
    product_ids,
    batch_size: int = DEFAULT_COLLECTIONS_BATCH_SIZE,
) -> EnrichmentResult:
    """Resolve collection titles per product id, in batches."""
    ids = _unique_ids(product_ids)
    result = EnrichmentResult(collections={pid: [] for pid in ids})
    batch_size = max(1, min(batch_size, DEFAULT_COLLECTIONS_BATCH_SIZE))

    for start in range(0, len(ids), batch_size):
        batch = ids[start:start + batch_size]
        gids = [f"gid://shopify/Product/{pid}" for pid in batch]
        try:
            data = client.graphql(PRODUCT_COLLECTIONS_QUERY, {"ids": gids})
            for node in data.get("nodes") or []:
                if not node:
                    continue
                try:
                    pid = int(node.get("legacyResourceId"))
                except (TypeError, ValueError):
                    continue
                if pid not in result.collections:
                    continue
                result.collections[pid] = [
                    c["title"]
                    for c in ((node.get("collections") or {}).get("nodes") or [])
                    if c and c.get("title")
                ]
        except (UpstreamError, AttributeError, TypeError) as exc:
            message = f"Collections lookup failed for {len(batch)} product(s) on {client.shop_domain}: {exc}"
            logger.warning(message)
            result.warnings.append(message)
            for pid in batch:
                result.collections[pid] = []

    return result
