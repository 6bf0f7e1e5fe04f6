"""
Pytest fixtures for ARK billing tests.

Provides an in-memory app per test (fresh database and fresh mock invoice
provider), seeded orders, and the lifecycle manager. file_app swaps in a
file-backed database for tests that write from more than one thread.
"""

from datetime import date
from decimal import Decimal

import pytest

from ark_billing import create_app
from ark_billing.extensions import db
from ark_billing.models import Order
from ark_billing.services.payment_service import get_lifecycle_manager


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'INVOICE_PROVIDER': 'mock',
    'SQUARE_WEBHOOK_SIGNATURE_KEY': 'test-signature-key',
    'SQUARE_WEBHOOK_URL': 'http://billing.test/api/webhooks/square',
    'BILLING_TENANT_CODE': 'ARK',
    'PAYMENT_NUMBER_PREFIX': 'PAY',
    'PAYMENT_TAX_RATE_BPS': 800,
    'PAYMENT_REFUND_POLICY': 'FULL_REFUND_ONLY',
}


@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    return db.session


@pytest.fixture(scope='function')
def provider(app):
    """The app's mock invoice provider."""
    return app.extensions['invoice_provider']


@pytest.fixture(scope='function')
def manager(app):
    return get_lifecycle_manager()


def make_order(session, **overrides) -> Order:
    fields = dict(
        order_number="ORD-1001",
        first_name="Dana",
        last_name="Reyes",
        email="dana@example.com",
        phone="555-0100",
        address="12 Quarry Rd",
        city="Springfield",
        state="IL",
        zip_code="62701",
        dumpster_size="20",
        final_price=Decimal("500.00"),
        scheduled_delivery_date=date(2026, 10, 20),
        scheduled_pickup_date=date(2026, 10, 27),
    )
    fields.update(overrides)
    order = Order(**fields)
    session.add(order)
    session.commit()
    return order


@pytest.fixture(scope='function')
def order_factory(db_session):
    """Build extra orders: order_factory(order_number="ORD-2001", final_price=None)."""
    return lambda **overrides: make_order(db_session, **overrides)


@pytest.fixture(scope='function')
def order(db_session):
    """$500.00 order for a 20 yard dumpster."""
    return make_order(db_session)


@pytest.fixture(scope='function')
def second_order(db_session):
    return make_order(
        db_session,
        order_number="ORD-1002",
        first_name="Lee",
        last_name="Park",
        email="lee@example.com",
        final_price=None,
        quoted_price=Decimal("275.50"),
        dumpster_size="10",
    )


@pytest.fixture(scope='function')
def sent_payment(manager, order):
    """Payment for `order` with a published mock invoice (status SENT)."""
    payment = manager.create_payment_from_order(order.id, due_date=date(2026, 11, 15))
    manager.create_remote_invoice(payment.id)
    return manager.send_invoice(payment.id, "EMAIL")


@pytest.fixture(scope='function')
def file_app(tmp_path):
    """App on a file-backed SQLite database, so threads get their own connections."""
    app = create_app(dict(
        TEST_CONFIG,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'billing.db'}",
        SQLALCHEMY_ENGINE_OPTIONS={'connect_args': {'check_same_thread': False}},
    ))

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture(scope='function')
def file_sent_payment(file_app):
    manager = get_lifecycle_manager()
    order = make_order(db.session)
    payment = manager.create_payment_from_order(order.id, due_date=date(2026, 11, 15))
    manager.create_remote_invoice(payment.id)
    return manager.send_invoice(payment.id, "EMAIL")
