"""
Pytest fixtures for the edition ledger tests.

Provides the Flask app on an in-memory SQLite database, a clean database per
test, an in-memory ledger store, and a test client.
"""

import pytest

from edition_ledger import create_app
from edition_ledger.extensions import db
from edition_ledger.services.ledger_store import MemoryLedgerStore


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_LOCK_TIMEOUT_SECONDS': 2.0,
        'LEDGER_RETRY_BACKOFF_SECONDS': 0.0,
        'SHOPIFY_SHOP': None,
        'SHOPIFY_ACCESS_TOKEN': None,
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
def sql_store(app, db_session):
    """The SQL store registered on the app, over an empty database."""
    return app.extensions["edition_ledger"]


@pytest.fixture(scope='function')
def store(app):
    """In-memory store; never waits on a held lock."""
    return MemoryLedgerStore(lock_timeout=0)


@pytest.fixture(scope='function')
def cli_runner(app, db_session):
    return app.test_cli_runner()
