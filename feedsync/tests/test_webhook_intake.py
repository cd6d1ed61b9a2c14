"""Tests for Shopify webhook verification, idempotent recording and dirty marking."""

import json
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import patch

from feedsync.database.models import Base, DirtyMarker, DisabledProduct, WebhookEvent
from feedsync.services.errors import AuthenticationError, ValidationError
from feedsync.services.webhook_intake import compute_signature, record_webhook, verify_signature

SECRET = "whsec_test_secret"
SHOP = "demo.myshopify.com"


@pytest.fixture
def test_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    return TestSession


@pytest.fixture
def db(test_session):
    session = test_session()
    yield session
    session.close()


@pytest.fixture
def client(test_session):
    with patch("feedsync.database.db.SessionLocal", test_session):
        from feedsync.api.app import create_app
        app = create_app()
        yield TestClient(app)


def _body(payload=None) -> bytes:
    return json.dumps(payload if payload is not None else {"id": 42, "title": "Blue Mug"}).encode()


def _headers(body: bytes, secret: str = SECRET, **overrides) -> dict:
    headers = {
        "X-Shopify-Hmac-Sha256": compute_signature(body, secret),
        "X-Shopify-Topic": "products/update",
        "X-Shopify-Shop-Domain": SHOP,
        "X-Shopify-Webhook-Id": "wh-1",
        "X-Shopify-Event-Id": "evt-1",
        "X-Shopify-API-Version": "2025-10",
        "X-Shopify-Triggered-At": "2026-10-19T10:00:00Z",
    }
    for key, value in overrides.items():
        header = "X-Shopify-" + key.replace("_", "-")
        if value is None:
            headers.pop(header, None)
        else:
            headers[header] = value
    return headers


class TestSignature:

    def test_valid_signature(self):
        body = _body()
        assert verify_signature(body, compute_signature(body, SECRET), SECRET) is True

    def test_tampered_body_rejected(self):
        body = _body()
        assert verify_signature(body + b" ", compute_signature(body, SECRET), SECRET) is False

    def test_missing_secret_fails_closed(self):
        body = _body()
        assert verify_signature(body, compute_signature(body, ""), "") is False

    def test_missing_header_rejected(self):
        assert verify_signature(_body(), None, SECRET) is False


class TestRecordWebhook:

    def test_records_event_and_marks_dirty(self, db):
        body = _body()
        result = record_webhook(db, body, _headers(body), SECRET)

        assert result.duplicate is False
        assert result.event_key == "evt-1"
        event = db.query(WebhookEvent).one()
        assert event.topic == "products/update"
        assert event.status == "pending"
        assert event.api_version == "2025-10"
        assert json.loads(event.payload)["id"] == 42
        marker = db.get(DirtyMarker, SHOP)
        assert marker is not None
        assert marker.dirty_at == event.received_at

    def test_missing_signature_writes_nothing(self, db):
        body = _body()
        with pytest.raises(AuthenticationError):
            record_webhook(db, body, _headers(body, Hmac_Sha256=None), SECRET)

        assert db.query(WebhookEvent).count() == 0
        assert db.query(DirtyMarker).count() == 0

    def test_wrong_secret_rejected(self, db):
        body = _body()
        with pytest.raises(AuthenticationError):
            record_webhook(db, body, _headers(body, secret="someone-else"), SECRET)
        assert db.query(WebhookEvent).count() == 0

    def test_duplicate_is_noop(self, db):
        body = _body()
        record_webhook(db, body, _headers(body), SECRET)
        first_dirty_at = db.get(DirtyMarker, SHOP).dirty_at

        result = record_webhook(db, body, _headers(body), SECRET)

        assert result.duplicate is True
        assert db.query(WebhookEvent).count() == 1
        db.expire_all()
        assert db.get(DirtyMarker, SHOP).dirty_at == first_dirty_at

    def test_new_event_refreshes_dirty_at(self, db):
        body = _body()
        record_webhook(db, body, _headers(body), SECRET)
        db.get(DirtyMarker, SHOP).dirty_at = datetime(2020, 1, 1)
        db.commit()

        record_webhook(db, body, _headers(body, Event_Id="evt-2", Webhook_Id="wh-2"), SECRET)

        db.expire_all()
        assert db.query(WebhookEvent).count() == 2
        assert db.query(DirtyMarker).count() == 1
        assert db.get(DirtyMarker, SHOP).dirty_at > datetime(2020, 1, 1)

    def test_marker_created_by_concurrent_delivery(self, db):
        engine = db.get_bind()
        competing = []

        # Another delivery for the same shop commits its marker first
        def insert_marker_first(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith("INSERT INTO dirty_markers") and not competing:
                competing.append(statement)
                cursor.execute(
                    "INSERT INTO dirty_markers (shop_domain, dirty_at, updated_at) VALUES (?, ?, ?)",
                    (SHOP, "2020-01-01 00:00:00.000000", "2020-01-01 00:00:00.000000"),
                )

        event.listen(engine, "before_cursor_execute", insert_marker_first)
        try:
            body = _body()
            result = record_webhook(db, body, _headers(body), SECRET)
        finally:
            event.remove(engine, "before_cursor_execute", insert_marker_first)

        assert competing
        assert result.duplicate is False
        db.expire_all()
        assert db.query(WebhookEvent).count() == 1
        assert db.query(DirtyMarker).count() == 1
        assert db.get(DirtyMarker, SHOP).dirty_at > datetime(2020, 1, 1)

    def test_webhook_id_used_when_event_id_absent(self, db):
        body = _body()
        result = record_webhook(db, body, _headers(body, Event_Id=None), SECRET)
        assert result.event_key == "wh-1"

    def test_missing_topic_is_validation_error(self, db):
        body = _body()
        with pytest.raises(ValidationError):
            record_webhook(db, body, _headers(body, Topic=None), SECRET)
        assert db.query(WebhookEvent).count() == 0

    def test_invalid_json_is_validation_error(self, db):
        body = b"{not json"
        with pytest.raises(ValidationError):
            record_webhook(db, body, _headers(body), SECRET)
        assert db.query(DirtyMarker).count() == 0

    def test_shop_domain_lowercased(self, db):
        body = _body()
        record_webhook(db, body, _headers(body, Shop_Domain="Demo.MyShopify.com"), SECRET)
        assert db.get(DirtyMarker, SHOP) is not None

    def test_delete_soft_disables_and_update_restores(self, db):
        body = _body({"id": 42})
        record_webhook(db, body, _headers(body, Topic="products/delete"), SECRET)
        assert db.get(DisabledProduct, (SHOP, 42)) is not None

        record_webhook(db, body, _headers(body, Topic="products/create", Event_Id="evt-2", Webhook_Id="wh-2"), SECRET)
        db.expire_all()
        assert db.get(DisabledProduct, (SHOP, 42)) is None

    def test_inventory_topic_marks_dirty_without_tombstone(self, db):
        body = _body({"inventory_item_id": 7, "available": 3})
        record_webhook(db, body, _headers(body, Topic="inventory_levels/update"), SECRET)
        assert db.get(DirtyMarker, SHOP) is not None
        assert db.query(DisabledProduct).count() == 0


class TestWebhookEndpoint:

    def test_accepts_signed_webhook(self, client, test_session):
        body = _body()
        resp = client.post("/webhooks/shopify", content=body, headers=_headers(body))
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "duplicate": False}

        db = test_session()
        assert db.query(WebhookEvent).count() == 1
        db.close()

    def test_duplicate_still_200(self, client):
        body = _body()
        client.post("/webhooks/shopify", content=body, headers=_headers(body))
        resp = client.post("/webhooks/shopify", content=body, headers=_headers(body))
        assert resp.status_code == 200
        assert resp.json()["duplicate"] is True

    def test_unsigned_webhook_401(self, client, test_session):
        body = _body()
        resp = client.post("/webhooks/shopify", content=body, headers=_headers(body, Hmac_Sha256=None))
        assert resp.status_code == 401
        assert "error" in resp.json()

        db = test_session()
        assert db.query(WebhookEvent).count() == 0
        db.close()

    def test_missing_shop_header_400(self, client):
        body = _body()
        resp = client.post("/webhooks/shopify", content=body, headers=_headers(body, Shop_Domain=None))
        assert resp.status_code == 400

    def test_recent_requires_admin_key(self, client):
        resp = client.get("/webhooks/shopify/recent")
        assert resp.status_code == 401

    def test_recent_lists_events(self, client):
        for i in range(3):
            body = _body({"id": i})
            client.post("/webhooks/shopify", content=body, headers=_headers(body, Event_Id=f"evt-{i}"))

        resp = client.get(f"/webhooks/shopify/recent?shop={SHOP}", headers={"X-Admin-Key": "admin-test-key"})
        assert resp.status_code == 200
        events = resp.json()["events"]
        assert len(events) == 3
        assert {e["eventKey"] for e in events} == {"evt-0", "evt-1", "evt-2"}
