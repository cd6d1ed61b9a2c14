"""
Shopify Admin API client (REST + GraphQL) for one shop.

Every request carries an explicit timeout. Transient failures (timeouts,
transport errors, 429 and 5xx answers) are retried with exponential backoff;
anything still failing surfaces as UpstreamError with the status and body.
Webhook creation is not idempotent and is sent exactly once.
"""

import json
import logging

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from feedsync.config.settings import get_settings
from feedsync.services.errors import UpstreamError

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class _RetryableResponse(Exception):
    """Internal: carries a transient error response through tenacity."""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"Shopify answered {response.status_code}")


class ShopifyClient:

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        settings = get_settings()
        self.shop_domain = shop_domain
        self.api_version = api_version or settings.shopify_api_version
        self._http = httpx.Client(
            base_url=f"https://{shop_domain}/admin/api/{self.api_version}",
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout or settings.shopify_request_timeout_seconds, connect=5.0),
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type((httpx.TransportError, _RetryableResponse)),
        reraise=True,
    )
    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        return self._send_once(method, path, **kwargs)

    def _send_once(self, method: str, path: str, **kwargs) -> httpx.Response:
        resp = self._http.request(method, path, **kwargs)
        if resp.status_code in _RETRYABLE_STATUS:
            logger.warning("Shopify %s %s for %s answered %d", method, path, self.shop_domain, resp.status_code)
            raise _RetryableResponse(resp)
        return resp

    def request(self, method: str, path: str, retryable: bool = True, **kwargs) -> httpx.Response:
        """Send one API call; ``retryable=False`` sends it exactly once."""
        send = self._send if retryable else self._send_once
        try:
            resp = send(method, path, **kwargs)
        except _RetryableResponse as exc:
            resp = exc.response
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Shopify request to {self.shop_domain} failed: {exc}") from exc

        if resp.is_error:
            raise UpstreamError(
                f"Shopify API error {resp.status_code} for {method} {path}",
                status=resp.status_code,
                body=resp.text,
            )
        return resp

    def get(self, path: str, params: dict | None = None) -> httpx.Response:
        return self.request("GET", path, params=params)

    def graphql(self, query: str, variables: dict | None = None) -> dict:
        resp = self.request("POST", "/graphql.json", json={"query": query, "variables": variables or {}})
        try:
            data = resp.json()
        except ValueError:
            raise UpstreamError("Shopify GraphQL invalid JSON response", status=resp.status_code, body=resp.text)

        if data.get("errors"):
            raise UpstreamError(
                f"Shopify GraphQL error: {json.dumps(data['errors'])}",
                status=resp.status_code,
                body=resp.text,
            )
        return data.get("data") or {}

    # --- Webhook subscriptions ---

    def list_webhooks(self) -> list[dict]:
        return self.get("/webhooks.json").json().get("webhooks", [])

    def create_webhook(self, topic: str, address: str) -> dict:
        resp = self.request(
            "POST",
            "/webhooks.json",
            json={"webhook": {"topic": topic, "address": address, "format": "json"}},
            retryable=False,
        )
        return resp.json().get("webhook", {})
