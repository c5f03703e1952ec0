"""
Pytest fixtures for Vendoa backend tests.

Provides the app on an in-memory database, a per-test table wipe, users of
every role with bearer-token headers, and product/customer factories.
"""

import pytest
from vendoa import create_app
from vendoa.extensions import db
from vendoa.models import Customer
from vendoa.services import products_service, session_service
from vendoa.services.auth_service import create_user


TEST_PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RECEIPT_RETRY_ATTEMPTS': 5,
        'LOG_LEVEL': 'DEBUG',
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


def _make_user(session, username, role):
    # Low bcrypt cost keeps the suite fast
    return create_user(session, username, TEST_PASSWORD, role, full_name=username.title(), rounds=4)


@pytest.fixture(scope='function')
def admin_user(db_session):
    return _make_user(db_session, "admin", "admin")


@pytest.fixture(scope='function')
def manager_user(db_session):
    return _make_user(db_session, "manager", "manager")


@pytest.fixture(scope='function')
def cashier_user(db_session):
    return _make_user(db_session, "cashier", "cashier")


def auth_headers(session, user) -> dict:
    """Mint a session token for ``user`` and return Authorization headers."""
    _record, token = session_service.create_session(session, user.id)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(db_session, admin_user):
    return auth_headers(db_session, admin_user)


@pytest.fixture(scope='function')
def manager_headers(db_session, manager_user):
    return auth_headers(db_session, manager_user)


@pytest.fixture(scope='function')
def cashier_headers(db_session, cashier_user):
    return auth_headers(db_session, cashier_user)


@pytest.fixture(scope='function')
def make_product(db_session, admin_user):
    """
    Factory for products created through the catalog service, so opening
    stock is backed by an in/initial movement.
    """
    counter = {"n": 0}

    def _make(price_cents=150, stock=10, **fields):
        counter["n"] += 1
        payload = {
            "sku": f"SKU-{counter['n']:03d}",
            "name": f"Product {counter['n']}",
            "price_cents": price_cents,
            "cost_cents": price_cents // 2,
            "stock_quantity": stock,
        }
        payload.update(fields)
        return products_service.create_product(db_session, payload, user_id=admin_user.id)

    return _make


@pytest.fixture(scope='function')
def make_customer(db_session):
    """Factory for customers; an opening balance is written directly for scenario setup."""
    def _make(name="Ana Reyes", credit_limit_cents=0, credit_balance_cents=0, **fields):
        customer = Customer(
            name=name,
            credit_limit_cents=credit_limit_cents,
            credit_balance_cents=credit_balance_cents,
            **fields,
        )
        db_session.add(customer)
        db_session.commit()
        return customer

    return _make
