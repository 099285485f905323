"""
Pytest fixtures for mercado backend tests.

Provides an in-memory application, a clean database per test, the test
client, and small factories for catalog products, carts, rewards programs
and placed orders.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from mercado import create_app
from mercado.extensions import db
from mercado.models import Product
from mercado.services import cart_service, loyalty_service, order_service, points_ledger
from mercado.services.concurrency import begin_write, run_with_retry


BUYER = "buyer-1"
OTHER_BUYER = "buyer-2"
SELLER = "seller-1"
OTHER_SELLER = "seller-2"
CRON_SECRET = "test-cron-secret"

# Business clock used by tests that need deterministic expiration
T0 = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CRON_SECRET': CRON_SECRET,
        'DB_RETRY_BACKOFF_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: catalog product for a seller."""
    def _make(seller_id=SELLER, price_cents=1000, stock=100, title="Empanada de pino", is_active=True):
        product = Product(
            seller_id=seller_id,
            title=title,
            price_cents=price_cents,
            stock=stock,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def fill_cart(db_session):
    """Factory: add (product, qty) lines to a buyer's cart."""
    def _fill(buyer_id, seller_id, *lines):
        for product, qty in lines:
            cart_service.add_item(buyer_id, seller_id, product.id, qty)
    return _fill


@pytest.fixture(scope='function')
def rewards_program(db_session):
    """Factory: active rewards program, optionally with (name, minimum_cents, multiplier) tiers."""
    def _configure(seller_id=SELLER, tiers=(), **overrides):
        params = {
            "is_active": True,
            "points_per_peso": Decimal("0.0286"),
            "minimum_purchase_cents": 500000,
        }
        params.update(overrides)
        config = loyalty_service.configure_rewards(seller_id, **params)
        for name, minimum, multiplier in tiers:
            loyalty_service.upsert_tier(
                seller_id,
                name,
                minimum_purchase_cents=minimum,
                points_multiplier=Decimal(multiplier),
            )
        return config
    return _configure


@pytest.fixture(scope='function')
def place(make_product, fill_cart):
    """Factory: single-line order of the given total, placed at `now`."""
    def _place(total_cents=8000, payment_method="transfer", buyer_id=BUYER, seller_id=SELLER, now=T0, **kwargs):
        product = make_product(seller_id=seller_id, price_cents=total_cents)
        fill_cart(buyer_id, seller_id, (product, 1))
        return order_service.place_order(buyer_id, seller_id, payment_method, now=now, **kwargs)
    return _place


@pytest.fixture(scope='function')
def grant_points(db_session):
    """Factory: credit points directly through the ledger."""
    def _grant(user_id, seller_id, points):
        def _op():
            begin_write()
            points_ledger.credit_points(
                user_id=user_id,
                seller_id=seller_id,
                points=points,
                description="Test grant",
            )
            db.session.commit()
        run_with_retry(_op)
    return _grant


def actor(user_id: str) -> dict:
    """Helper to create the identity header set by the auth gateway."""
    return {'X-User-Id': user_id}
