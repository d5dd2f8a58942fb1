"""
Pytest fixtures for storeledger backend tests.

Provides test database setup, store/variant fixtures, stock seeding helpers,
and a test client that sends the actor header.
"""

import pytest
from storeledger import create_app
from storeledger.config import TestConfig
from storeledger.extensions import db
from storeledger.models import Store, ProductVariant
from storeledger.services import inventory_service


ACTOR_ID = 7


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def actor_headers():
    return {"X-Actor-Id": str(ACTOR_ID)}


@pytest.fixture(scope='function')
def actor_id():
    return ACTOR_ID


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
def store(db_session):
    """Main store (lowest id, so also the default store)."""
    store = Store(name="Main Store", code="MAIN")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def second_store(db_session, store):
    store = Store(name="Branch Store", code="BRANCH")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def variant(db_session):
    variant = ProductVariant(sku="SOFA-GRY-3S", name="Sofa grey 3-seat", price_cents=129900, cost_price_cents=70000)
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def other_variant(db_session):
    variant = ProductVariant(sku="LAMP-BRS", name="Brass floor lamp", price_cents=8900, cost_price_cents=3500)
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def seed_stock(db_session, actor_id):
    """Return a helper that puts `quantity` units of a variant into a store."""
    def _seed(variant, quantity, store):
        return inventory_service.return_stock(
            variant.id, quantity, store.id, actor_id=actor_id, note="seed"
        )
    return _seed
