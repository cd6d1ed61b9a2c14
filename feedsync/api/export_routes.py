"""Feed download for the mobile-app catalog importer."""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from feedsync.api.admin_auth import require_export_key
from feedsync.database.db import get_db
from feedsync.database.models import CatalogSnapshot
from feedsync.services.credential_resolver import resolve_shop_domain
from feedsync.services.errors import NotFoundError, ValidationError
from feedsync.services.feed_csv import FEED_CONTENT_TYPE

export_router = APIRouter(prefix="/exports", tags=["exports"], dependencies=[Depends(require_export_key)])


@export_router.get("/feed/products.csv")
def download_feed(shop: str | None = Query(default=None), db: Session = Depends(get_db)):
    """Serve the last persisted snapshot. Never calls Shopify."""
    if not shop or not shop.strip():
        raise ValidationError("Missing ?shop=")

    shop_domain = resolve_shop_domain(db, shop)
    if not shop_domain:
        raise NotFoundError(f"Unknown shop or alias: {shop}")

    snapshot = db.get(CatalogSnapshot, shop_domain)
    if snapshot is None:
        raise NotFoundError(f"No feed generated yet for {shop_domain}")

    return Response(
        content=snapshot.content.encode("utf-8"),
        media_type=FEED_CONTENT_TYPE,
        headers={
            "Content-Disposition": f'attachment; filename="{shop_domain}_products.csv"',
            "X-Feed-Generated-At": snapshot.generated_at.isoformat(),
        },
    )
