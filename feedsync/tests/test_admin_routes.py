"""HTTP-layer tests for the admin and export endpoints."""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import patch

from feedsync.database.models import Base, CatalogSnapshot, DirtyMarker, Shop, ShopAlias, SyncRun
from feedsync.services.dirty_tracker import mark_dirty

SHOP = "demo.myshopify.com"
ADMIN = {"X-Admin-Key": "admin-test-key"}
EXPORT = {"X-Export-Key": "export-test-key"}


@pytest.fixture
def test_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    db = TestSession()
    db.add(Shop(shop_domain=SHOP, access_token="shpat_demo"))
    db.add(ShopAlias(alias="demo", shop_domain=SHOP))
    db.commit()
    db.close()
    return TestSession


@pytest.fixture
def shopify(fake_shopify, product_factory):
    return fake_shopify(products=[product_factory(1), product_factory(2, title="Red Cup")])


@pytest.fixture
def client(test_session, shopify):
    with patch("feedsync.database.db.SessionLocal", test_session), \
         patch("feedsync.services.sync_orchestrator.open_client", shopify.client):
        from feedsync.api.app import create_app
        app = create_app()
        yield TestClient(app)


def _dirty(test_session, shop=SHOP):
    db = test_session()
    mark_dirty(db, shop)
    db.close()


class TestAdminAuth:

    def test_missing_key_401(self, client):
        resp = client.post(f"/admin/sync?shop={SHOP}")
        assert resp.status_code == 401
        assert "error" in resp.json()

    def test_wrong_key_401(self, client):
        resp = client.post(f"/admin/sync?shop={SHOP}", headers={"X-Admin-Key": "nope"})
        assert resp.status_code == 401

    def test_unset_key_locks_surface(self, client, monkeypatch):
        from feedsync.config.settings import get_settings
        monkeypatch.setenv("ADMIN_KEY", "")
        get_settings.cache_clear()
        resp = client.post(f"/admin/sync?shop={SHOP}", headers={"X-Admin-Key": ""})
        assert resp.status_code == 401


class TestSyncTrigger:

    def test_sync_dirty_shop(self, client, test_session):
        _dirty(test_session)
        resp = client.post("/admin/sync?shop=demo", headers=ADMIN)

        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["tenantKey"] == SHOP
        assert data["productsCount"] == 2
        assert data["warnings"] == []
        assert isinstance(data["runId"], int)

    def test_not_dirty_409_and_no_run(self, client, test_session):
        resp = client.post(f"/admin/sync?shop={SHOP}", headers=ADMIN)
        assert resp.status_code == 409

        db = test_session()
        assert db.query(SyncRun).count() == 0
        db.close()

    def test_unknown_shop_404(self, client):
        resp = client.post("/admin/sync?shop=nobody.myshopify.com", headers=ADMIN)
        assert resp.status_code == 404

    def test_missing_shop_400(self, client):
        resp = client.post("/admin/sync", headers=ADMIN)
        assert resp.status_code == 400

    def test_upstream_failure_502(self, client, test_session, shopify):
        shopify.fail_page = 0
        shopify.fail_status = 403
        _dirty(test_session)

        resp = client.post(f"/admin/sync?shop={SHOP}", headers=ADMIN)

        assert resp.status_code == 502
        db = test_session()
        assert db.get(DirtyMarker, SHOP) is not None
        assert db.query(SyncRun).one().status == "failed"
        db.close()

    def test_batch(self, client, test_session):
        _dirty(test_session)
        resp = client.post("/admin/sync/batch?limit=5", headers=ADMIN)

        assert resp.status_code == 200
        data = resp.json()
        assert data["processed"] == 1
        assert data["results"][0]["tenantKey"] == SHOP
        assert data["results"][0]["status"] == "processed"

    def test_batch_limit_bounds(self, client):
        assert client.post("/admin/sync/batch?limit=0", headers=ADMIN).status_code == 422
        assert client.post("/admin/sync/batch?limit=201", headers=ADMIN).status_code == 422

    def test_runs_listing(self, client, test_session):
        _dirty(test_session)
        client.post(f"/admin/sync?shop={SHOP}", headers=ADMIN)

        resp = client.get("/admin/sync/runs?shop=demo", headers=ADMIN)
        assert resp.status_code == 200
        runs = resp.json()["runs"]
        assert len(runs) == 1
        assert runs[0]["status"] == "ok"
        assert runs[0]["productsCount"] == 2


class TestWebhookRegistration:

    def test_registers_missing_topics(self, client, shopify):
        shopify.webhooks = [{
            "id": 1,
            "topic": "products/update",
            "address": "https://feed.example.com/webhooks/shopify",
        }]

        resp = client.post(f"/admin/shopify/webhooks/register?shop={SHOP}", headers=ADMIN)

        assert resp.status_code == 200
        data = resp.json()
        assert data["address"] == "https://feed.example.com/webhooks/shopify"
        assert [w["topic"] for w in data["already"]] == ["products/update"]
        assert [w["topic"] for w in data["created"]] == [
            "products/create",
            "products/delete",
            "inventory_levels/update",
        ]

    def test_list(self, client, shopify):
        shopify.webhooks = [{"id": 7, "topic": "products/create", "address": "https://x"}]
        resp = client.get("/admin/shopify/webhooks/list?shop=demo", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["webhooks"][0]["id"] == 7

    def test_unknown_shop_404(self, client):
        resp = client.post("/admin/shopify/webhooks/register?shop=nobody", headers=ADMIN)
        assert resp.status_code == 404


class TestFeedExport:

    def _snapshot(self, test_session, content='"product_id"\n'):
        db = test_session()
        db.add(CatalogSnapshot(shop_domain=SHOP, content=content, products_count=0,
                               byte_size=len(content), generated_at=datetime(2026, 10, 19, 8, 0)))
        db.commit()
        db.close()

    def test_requires_export_key(self, client, test_session):
        self._snapshot(test_session)
        assert client.get(f"/exports/feed/products.csv?shop={SHOP}").status_code == 401
        assert client.get(f"/exports/feed/products.csv?shop={SHOP}", headers=ADMIN).status_code == 401

    def test_serves_snapshot(self, client, test_session):
        self._snapshot(test_session, content='"product_id";"variant_id"\n;\n')
        resp = client.get("/exports/feed/products.csv?shop=demo", headers=EXPORT)

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "text/csv; charset=utf-8"
        assert resp.headers["content-disposition"] == f'attachment; filename="{SHOP}_products.csv"'
        assert resp.text == '"product_id";"variant_id"\n;\n'

    def test_no_snapshot_404(self, client):
        resp = client.get(f"/exports/feed/products.csv?shop={SHOP}", headers=EXPORT)
        assert resp.status_code == 404

    def test_unknown_shop_404(self, client):
        resp = client.get("/exports/feed/products.csv?shop=nobody", headers=EXPORT)
        assert resp.status_code == 404

    def test_export_after_sync(self, client, test_session):
        _dirty(test_session)
        client.post(f"/admin/sync?shop={SHOP}", headers=ADMIN)

        resp = client.get(f"/exports/feed/products.csv?shop={SHOP}", headers=EXPORT)
        assert resp.status_code == 200
        assert resp.text.startswith('"product_id";"variant_id";"product_title"')
        assert '"Red Cup"' in resp.text


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_health_db(self, client):
        resp = client.get("/health/db")
        assert resp.status_code == 200
        assert resp.json()["database"] == "connected"
