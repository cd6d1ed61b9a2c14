"""Resolve a shop domain or alias to the canonical shop and its access token.

Every caller that needs a token goes through here. There is no cache: the
lookup gates every upstream call, so it always reads the current row.
"""

from dataclasses import dataclass

from sqlalchemy.orm import Session

from feedsync.database.models import Shop, ShopAlias
from feedsync.services.errors import NotFoundError


@dataclass(frozen=True)
class ShopCredentials:
    shop_domain: str | None
    access_token: str | None


def normalize_shop_input(shop_or_alias: str | None) -> str:
    return (shop_or_alias or "").strip().lower()


def resolve_shop_domain(db: Session, shop_or_alias: str | None) -> str | None:
    """Exact shop domain first, then the alias table. None when unknown."""
    key = normalize_shop_input(shop_or_alias)
    if not key:
        return None

    shop = db.get(Shop, key)
    if shop:
        return shop.shop_domain

    alias = db.get(ShopAlias, key)
    if alias:
        return alias.shop_domain

    return None


def resolve_credentials(db: Session, shop_or_alias: str | None) -> ShopCredentials:
    shop_domain = resolve_shop_domain(db, shop_or_alias)
    if not shop_domain:
        return ShopCredentials(None, None)

    shop = db.get(Shop, shop_domain)
    return ShopCredentials(shop_domain, shop.access_token if shop else None)


def require_credentials(db: Session, shop_or_alias: str | None) -> ShopCredentials:
    """Like resolve_credentials, but unknown or uninstalled shops raise 404."""
    creds = resolve_credentials(db, shop_or_alias)
    if not creds.shop_domain:
        raise NotFoundError(f"Unknown shop or alias: {normalize_shop_input(shop_or_alias)}")
    if not creds.access_token:
        raise NotFoundError(f"Shop not installed: {creds.shop_domain}")
    return creds
