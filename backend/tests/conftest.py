"""
Pytest fixtures for bottlekeep backend tests.

Provides the test database, stores (branch + central), a deposit factory,
a test client and helpers for store-scoped API headers.
"""

import pytest

from bottlekeep import create_app
from bottlekeep.config import TestConfig
from bottlekeep.extensions import db
from bottlekeep.services import deposit_service, notification_service, store_service


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
    """Branch store on Bangkok time with default settings."""
    return store_service.create_store("BKK01", "Sukhumvit 11", timezone="Asia/Bangkok")


@pytest.fixture(scope='function')
def other_store(db_session):
    """Second branch, used to prove store scoping."""
    return store_service.create_store("CNX01", "Nimman", timezone="Asia/Bangkok")


@pytest.fixture(scope='function')
def central_store(db_session):
    """The central (HQ) store receiving transfers."""
    return store_service.create_store("HQ", "Central Warehouse", is_central=True, timezone="Asia/Bangkok")


@pytest.fixture(scope='function')
def make_deposit(store):
    """Factory for committed deposits in `store` (override any create_deposit kwarg)."""
    def _make(quantity=10, store_id=None, **overrides):
        kwargs = {
            "customer_name": "Somchai",
            "product_name": "Johnnie Walker Black Label",
            "category": "whisky",
            "table_number": "A3",
            "actor": "staff-1",
        }
        kwargs.update(overrides)
        return deposit_service.create_deposit(store_id or store.id, quantity=quantity, **kwargs)
    return _make


@pytest.fixture(scope='function')
def sent_notifications(monkeypatch):
    """Capture notification events instead of delivering them."""
    sent = []

    def _capture(event):
        sent.append(event)
        return True

    monkeypatch.setattr(notification_service, "notify", _capture)
    return sent


def store_headers(store_id, actor="staff-1") -> dict:
    """Helper to create store-scoped request headers."""
    headers = {'X-Store-Id': str(store_id)}
    if actor:
        headers['X-Actor'] = actor
    return headers
