"""
CLI tool to register a shop's Admin API token (and optional aliases).

Usage:
    python -m feedsync.create_shop --shop demo.myshopify.com --token shpat_xxx
    python -m feedsync.create_shop --shop demo.myshopify.com --token shpat_xxx --alias demo --alias shop.example.com --dirty

Re-running for an existing shop replaces its token. --dirty queues a first
full sync for the next batch run.
"""

import argparse

from feedsync.database.db import init_db, SessionLocal
from feedsync.database.models import Shop, ShopAlias
from feedsync.services.credential_resolver import normalize_shop_input
from feedsync.services.dirty_tracker import mark_dirty


def create_shop(shop: str, token: str, aliases=None, scopes: str | None = None, dirty: bool = False) -> bool:
    init_db()
    db = SessionLocal()

    try:
        shop_domain = normalize_shop_input(shop)
        if not shop_domain or not token.strip():
            print("Error: --shop and --token must not be empty")
            return False

        existing = db.get(Shop, shop_domain)
        if existing:
            existing.access_token = token.strip()
            if scopes is not None:
                existing.scopes = scopes
        else:
            db.add(Shop(shop_domain=shop_domain, access_token=token.strip(), scopes=scopes))
        db.flush()

        for raw in aliases or []:
            alias = normalize_shop_input(raw)
            if not alias or alias == shop_domain:
                continue
            current = db.get(ShopAlias, alias)
            if current and current.shop_domain != shop_domain:
                print(f"Error: alias '{alias}' already points at {current.shop_domain}")
                db.rollback()
                return False
            if not current:
                db.add(ShopAlias(alias=alias, shop_domain=shop_domain))

        db.commit()

        if dirty:
            mark_dirty(db, shop_domain)

        alias_rows = db.query(ShopAlias).filter(ShopAlias.shop_domain == shop_domain).order_by(ShopAlias.alias).all()
        print(f"Shop {'updated' if existing else 'registered'}:")
        print(f"  Domain:  {shop_domain}")
        print(f"  Aliases: {', '.join(a.alias for a in alias_rows) or '-'}")
        if dirty:
            print("  Queued for the next batch sync")
        return True
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Register a Shopify shop for feed sync")
    parser.add_argument("--shop", required=True, help="Canonical *.myshopify.com domain")
    parser.add_argument("--token", required=True, help="Admin API access token")
    parser.add_argument("--alias", action="append", default=[], help="Alternate name (repeatable)")
    parser.add_argument("--scopes", default=None, help="Granted scopes, comma separated")
    parser.add_argument("--dirty", action="store_true", help="Mark the shop dirty so the next batch syncs it")

    args = parser.parse_args()
    ok = create_shop(args.shop, args.token, args.alias, args.scopes, args.dirty)
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()
