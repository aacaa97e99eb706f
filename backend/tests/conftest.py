"""
Pytest fixtures for tilebooks backend tests.

Provides the application on an in-memory database, a per-test table wipe,
a test client and small factories for products, customers and invoices.
"""

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tilebooks import create_app
from tilebooks.extensions import db
from tilebooks.models import StockHistory
from tilebooks.services import customer_service, invoice_service, stock_ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'WARNING',
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
    """Factory: 2×2 wall tile (4 pieces per box) with 10 boxes in stock unless overridden."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        payload = {
            "name": f"Glossy White {counter['n']}",
            "type": "Wall",
            "size": "2×2",
            "price_per_box": 80000,
            "stock": {"boxes": 10, "pieces": 0},
        }
        payload.update(overrides)
        product, _ = stock_ledger_service.create_product(payload)
        return product

    return _make


@pytest.fixture(scope='function')
def make_customer(db_session):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        payload = {"name": f"Customer {counter['n']}", "phone": f"98765{counter['n']:05d}"}
        payload.update(overrides)
        return customer_service.create_customer(payload)

    return _make


@pytest.fixture(scope='function')
def make_invoice(db_session):
    """Factory: one-line NON_GST invoice; final_amount and total_paid are explicit."""

    def _make(customer, product=None, *, quantity=None, final_amount=100000, total_paid=0, **overrides):
        item = {
            "product_name": product.name if product else "Custom Border",
            "quantity": quantity or {"boxes": 1, "pieces": 0},
            "price_per_box": final_amount,
        }
        if product is not None:
            item["product_id"] = product.id
        else:
            item["is_custom"] = True
            item["pieces_per_box"] = 4
        payload = {
            "customer_id": customer.id,
            "items": [item],
            "final_amount": final_amount,
            "payment": {"total_paid": total_paid},
        }
        payload.update(overrides)
        return invoice_service.create_invoice(payload)

    return _make


@pytest.fixture(scope='function')
def failing_sale_flush(db_session, monkeypatch):
    """Make any flush carrying a new SALE ledger row fail like a broken store."""
    real_flush = Session.flush

    def _flush(self, objects=None):
        if any(isinstance(obj, StockHistory) and obj.action == "SALE" for obj in self.new):
            raise SQLAlchemyError("disk I/O error")
        return real_flush(self, objects)

    monkeypatch.setattr(Session, "flush", _flush)
