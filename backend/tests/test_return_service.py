"""
Return tests: ledger effect, invoice/customer money updates and FIFO credit use.
"""

import pytest

from tilebooks.errors import InsufficientCreditError, NotFoundError, ValidationError
from tilebooks.extensions import db
from tilebooks.models import Customer, Invoice, Product, Return, StockHistory
from tilebooks.services import invoice_service, return_service
from tilebooks.units import BoxQuantity


def _reload(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk)


@pytest.fixture
def sold(make_customer, make_product, make_invoice):
    """Customer with a 1000 invoice for 2 boxes, 500 already paid."""
    customer = make_customer(name="Asha")
    product = make_product()
    invoice = make_invoice(customer, product, quantity={"boxes": 2, "pieces": 0}, final_amount=1000, total_paid=500)
    return customer, product, invoice


def _return(invoice, product, value=None, **kwargs):
    item = {"product_id": product.id, "quantity": {"boxes": 0, "pieces": 1}}
    if value is not None:
        item["return_value"] = value
    return return_service.create_return(invoice.id, [item], **kwargs)


class TestLineValue:
    def test_box_and_piece_pricing(self):
        assert return_service.line_return_value(BoxQuantity(1, 1), 1000, 4) == 1250
        # 1 piece of a 3-piece 1000 box: 333.33 -> 333
        assert return_service.line_return_value(BoxQuantity(0, 1), 1000, 3) == 333
        # 2 pieces: 666.67 -> 667
        assert return_service.line_return_value(BoxQuantity(0, 2), 1000, 3) == 667


class TestCreateReturn:
    def test_return_on_partial_invoice(self, sold):
        customer, product, invoice = sold

        record = _return(invoice, product, value=300)

        assert record.return_number.startswith("RET-")
        assert record.total_return_value == 300
        assert record.credit_generated == 300
        assert record.credit_balance == 300

        invoice = _reload(Invoice, invoice.id)
        assert invoice.pending_amount == 200
        assert invoice.is_returned
        assert invoice.available_return_credit == 300
        assert invoice.returns_history[0]["return_id"] == record.id

        assert _reload(Customer, customer.id).outstanding_balance == 200

        product = _reload(Product, product.id)
        assert product.get_counter("returns") == BoxQuantity(0, 1)
        entry = db.session.query(StockHistory).filter_by(product_id=product.id, action="RETURN").one()
        assert entry.notes == f"Customer return - Invoice #{invoice.invoice_number} - OTHER"

    def test_value_defaults_to_original_price(self, sold):
        _, product, invoice = sold
        record = return_service.create_return(
            invoice.id, [{"product_id": product.id, "quantity": {"boxes": 1, "pieces": 2}}],
        )
        # 1000 per box, 4 pieces per box
        assert record.total_return_value == 1500

    def test_floors_pending_and_outstanding(self, sold):
        customer, product, invoice = sold
        _return(invoice, product, value=900)

        assert _reload(Invoice, invoice.id).pending_amount == 0
        assert _reload(Customer, customer.id).outstanding_balance == 0

    def test_refund_generates_no_credit(self, sold):
        customer, product, invoice = sold
        record = _return(invoice, product, value=100, return_type="refund", refund_method="UPI")

        assert record.refund_amount == 100
        assert record.credit_balance == 0
        assert return_service.get_customer_credit(customer.id)["total_credit"] == 0

    def test_product_must_be_on_invoice(self, sold, make_product):
        _, _, invoice = sold
        stranger = make_product(size="2×4")
        with pytest.raises(NotFoundError, match="not found in invoice"):
            _return(invoice, stranger)
        assert db.session.query(Return).count() == 0

    def test_invoice_with_returns_cannot_be_deleted(self, sold):
        _, product, invoice = sold
        _return(invoice, product)
        with pytest.raises(ValidationError, match="Cannot delete invoice with returns"):
            invoice_service.delete_invoice(invoice.id)

    def test_items_required(self, sold):
        _, _, invoice = sold
        with pytest.raises(ValidationError):
            return_service.create_return(invoice.id, [])


class TestCredit:
    def test_credit_used_oldest_first(self, sold):
        customer, product, invoice = sold
        older = _return(invoice, product, value=300)
        newer = _return(invoice, product, value=200)

        result = return_service.use_credit(customer.id, invoice.id, 400)

        assert result["credit_used"] == 400
        assert result["remaining_credit"] == 100
        assert [(d["return_id"], d["amount"]) for d in result["deductions"]] == [(older.id, 300), (newer.id, 100)]

        assert _reload(Return, older.id).credit_balance == 0
        assert _reload(Return, newer.id).credit_balance == 100
        invoice = _reload(Invoice, invoice.id)
        assert invoice.used_return_credit == 400
        assert invoice.available_return_credit == 100

        credit = return_service.get_customer_credit(customer.id)
        assert credit["total_credit"] == 100
        assert [r["return_id"] for r in credit["returns"]] == [newer.id]

    def test_insufficient_credit_deducts_nothing(self, sold):
        customer, product, invoice = sold
        record = _return(invoice, product, value=300)

        with pytest.raises(InsufficientCreditError, match="Available: 300, Requested: 500"):
            return_service.use_credit(customer.id, invoice.id, 500)

        assert _reload(Return, record.id).credit_balance == 300

    def test_invoice_must_belong_to_customer(self, sold, make_customer):
        _, product, invoice = sold
        _return(invoice, product, value=300)
        stranger = make_customer()
        with pytest.raises(ValidationError):
            return_service.use_credit(stranger.id, invoice.id, 100)

    def test_amount_must_be_positive(self, sold):
        customer, _, invoice = sold
        with pytest.raises(ValidationError):
            return_service.use_credit(customer.id, invoice.id, 0)
