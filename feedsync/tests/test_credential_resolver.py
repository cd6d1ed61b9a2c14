"""Tests for shop/alias resolution."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from feedsync.database.models import Base, Shop, ShopAlias
from feedsync.services.credential_resolver import (
    normalize_shop_input,
    require_credentials,
    resolve_credentials,
    resolve_shop_domain,
)
from feedsync.services.errors import NotFoundError


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    session.add(Shop(shop_domain="demo.myshopify.com", access_token="shpat_demo"))
    session.add(Shop(shop_domain="gone.myshopify.com", access_token=None))
    session.add(ShopAlias(alias="demo", shop_domain="demo.myshopify.com"))
    session.add(ShopAlias(alias="shop.example.com", shop_domain="demo.myshopify.com"))
    session.commit()
    yield session
    session.close()


class TestResolveShopDomain:

    def test_normalizes_input(self):
        assert normalize_shop_input("  Demo.MyShopify.com ") == "demo.myshopify.com"
        assert normalize_shop_input(None) == ""

    def test_exact_domain(self, db):
        assert resolve_shop_domain(db, "demo.myshopify.com") == "demo.myshopify.com"

    def test_alias(self, db):
        assert resolve_shop_domain(db, "DEMO ") == "demo.myshopify.com"
        assert resolve_shop_domain(db, "shop.example.com") == "demo.myshopify.com"

    def test_unknown(self, db):
        assert resolve_shop_domain(db, "nobody") is None
        assert resolve_shop_domain(db, "") is None


class TestCredentials:

    def test_resolves_token(self, db):
        creds = resolve_credentials(db, "demo")
        assert creds.shop_domain == "demo.myshopify.com"
        assert creds.access_token == "shpat_demo"

    def test_unknown_shop_is_empty(self, db):
        creds = resolve_credentials(db, "nobody")
        assert creds.shop_domain is None
        assert creds.access_token is None

    def test_uninstalled_shop_has_no_token(self, db):
        creds = resolve_credentials(db, "gone.myshopify.com")
        assert creds.shop_domain == "gone.myshopify.com"
        assert creds.access_token is None

    def test_require_unknown_raises(self, db):
        with pytest.raises(NotFoundError):
            require_credentials(db, "nobody")

    def test_require_uninstalled_raises(self, db):
        with pytest.raises(NotFoundError, match="not installed"):
            require_credentials(db, "gone.myshopify.com")

    def test_token_rotation_seen_immediately(self, db):
        db.get(Shop, "demo.myshopify.com").access_token = "shpat_rotated"
        db.commit()
        assert require_credentials(db, "demo").access_token == "shpat_rotated"
