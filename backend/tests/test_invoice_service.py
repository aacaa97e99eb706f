"""
Invoice lifecycle tests: create / edit / delete ripple effects on product
sales, the stock ledger and customer aggregates, plus payment updates.
"""

import pytest

from tilebooks.errors import NotFoundError, PersistenceError, ValidationError
from tilebooks.extensions import db
from tilebooks.models import Customer, Invoice, Payment, Product, StockHistory
from tilebooks.services import invoice_service
from tilebooks.services.invoice_service import derive_payment_status
from tilebooks.units import BoxQuantity


def _reload(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk)


def _sale_entries(invoice_id):
    return db.session.query(StockHistory).filter_by(invoice_id=invoice_id, action="SALE").all()


def _custom_item(price_per_box, boxes=1):
    return {"product_name": "Custom Border", "is_custom": True, "pieces_per_box": 4,
            "quantity": {"boxes": boxes, "pieces": 0}, "price_per_box": price_per_box}


class TestPaymentStatusRule:
    @pytest.mark.parametrize("paid, final, discount, expected", [
        (0, 1000, 0, "PENDING"),
        (400, 1000, 0, "PARTIAL"),
        (1000, 1000, 0, "PAID"),
        (900, 1000, 100, "PAID"),
        (0, 0, 0, "PAID"),
    ])
    def test_rule(self, paid, final, discount, expected):
        assert derive_payment_status(paid, final, discount) == expected


class TestCreate:
    def test_create_pending_invoice(self, make_customer, make_product, make_invoice):
        customer = make_customer()
        product = make_product()

        invoice = make_invoice(customer, product, quantity={"boxes": 2, "pieces": 1}, final_amount=1000)

        assert invoice.payment_status == "PENDING"
        assert invoice.pending_amount == 1000
        assert invoice.invoice_number.startswith("INV-")
        assert invoice.invoice_number.endswith("-0001")

        product = _reload(Product, product.id)
        assert product.get_counter("sales") == BoxQuantity(2, 1)
        [entry] = _sale_entries(invoice.id)
        assert entry.notes == f"Sale - Invoice: {invoice.invoice_number}"
        assert entry.customer_id == customer.id

        customer = _reload(Customer, customer.id)
        assert customer.total_purchase_amount == 1000
        assert customer.outstanding_balance == 1000
        assert customer.total_invoices == 1
        assert customer.last_purchase_date is not None

    def test_sequential_numbers_per_type(self, make_customer, make_invoice):
        customer = make_customer()
        first = make_invoice(customer)
        second = make_invoice(customer)
        gst = make_invoice(customer, invoice_type="GST")

        assert int(second.invoice_number[-4:]) == int(first.invoice_number[-4:]) + 1
        assert gst.invoice_number.startswith("GST-")
        assert gst.invoice_number.endswith("-0001")

    def test_custom_number_must_be_unique(self, make_customer, make_invoice):
        customer = make_customer()
        make_invoice(customer, custom_invoice_number="SHOP-1")
        with pytest.raises(ValidationError, match="already exists"):
            make_invoice(customer, custom_invoice_number="SHOP-1")

    def test_custom_line_skips_ledger(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer)
        assert invoice.lines[0].is_custom
        assert _sale_entries(invoice.id) == []

    def test_oversell_on_invoice_is_allowed(self, make_customer, make_product, make_invoice):
        customer = make_customer()
        product = make_product(stock={"boxes": 1, "pieces": 0})
        make_invoice(customer, product, quantity={"boxes": 3, "pieces": 0})
        assert _reload(Product, product.id).get_counter("sales") == BoxQuantity(3, 0)

    def test_partial_payment_on_create(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer, final_amount=1000, total_paid=400)
        assert invoice.payment_status == "PARTIAL"
        assert invoice.pending_amount == 600
        customer = _reload(Customer, customer.id)
        assert customer.total_paid_amount == 400
        assert customer.outstanding_balance == 600

    def test_requires_customer_and_items(self, make_customer):
        customer = make_customer()
        with pytest.raises(ValidationError, match="Customer and items are required"):
            invoice_service.create_invoice({"customer_id": customer.id, "items": []})
        with pytest.raises(NotFoundError):
            invoice_service.create_invoice({"customer_id": 999, "items": [{"product_name": "x"}]})

    def test_derived_gst_totals(self, make_customer):
        customer = make_customer()
        invoice = invoice_service.create_invoice({
            "customer_id": customer.id,
            "invoice_type": "GST",
            "items": [{
                "product_name": "Skirting",
                "is_custom": True,
                "pieces_per_box": 4,
                "quantity": {"boxes": 2, "pieces": 2},
                "price_per_box": 10000,
                "tax_rate": 18,
            }],
        })
        # 2 boxes + 2 pieces at 2500/piece
        assert invoice.subtotal == 25000
        assert invoice.total_tax == 4500
        assert (invoice.cgst, invoice.sgst) == (2250, 2250)
        assert invoice.total_before_discount == 29500
        assert invoice.invoice_value == 29500
        assert invoice.final_amount == 29500

    def test_bill_discount_lowers_final_once(self, make_customer):
        customer = make_customer()
        invoice = invoice_service.create_invoice({
            "customer_id": customer.id,
            "items": [_custom_item(100000)],
            "discount": 10000,
            "payment": {"total_paid": 80000},
        })

        assert invoice.final_amount == 90000
        assert invoice.bill_discount == 10000
        assert invoice.discount == 0
        assert invoice.pending_amount == 10000
        assert invoice.payment_status == "PARTIAL"
        assert _reload(Customer, customer.id).outstanding_balance == 10000

        invoices, total = invoice_service.list_invoices(payment_statuses=invoice_service.OPEN_PAYMENT_STATUSES)
        assert total == 1
        assert invoices[0].id == invoice.id

    def test_payment_after_bill_discount_matches_customer(self, make_customer):
        customer = make_customer()
        invoice = invoice_service.create_invoice({
            "customer_id": customer.id,
            "items": [_custom_item(100000)],
            "discount": 10000,
        })

        invoice, _ = invoice_service.update_invoice_payment(invoice.id, {"payment_amount": 10000})

        assert invoice.pending_amount == 80000
        assert _reload(Customer, customer.id).outstanding_balance == 80000

    @pytest.mark.parametrize("field, value, message", [
        ("customer_details", "Asha", "customer_details must be an object"),
        ("payment", [100], "payment must be an object"),
    ])
    def test_non_object_sections_rejected(self, make_customer, field, value, message):
        customer = make_customer()
        with pytest.raises(ValidationError, match=message):
            invoice_service.create_invoice({
                "customer_id": customer.id,
                "items": [_custom_item(1000)],
                field: value,
            })
        assert db.session.query(Invoice).count() == 0

    def test_ledger_write_failure_names_step_and_invoice(self, make_customer, make_product, failing_sale_flush):
        customer = make_customer()
        product = make_product()

        with pytest.raises(PersistenceError) as excinfo:
            invoice_service.create_invoice({
                "customer_id": customer.id,
                "items": [{"product_id": product.id, "quantity": {"boxes": 1, "pieces": 0}}],
            })

        details = excinfo.value.details
        assert details["step"] == "invoice_sale_ledger"
        assert details["invoice_id"] is not None
        assert excinfo.value.status_code == 500

        assert db.session.query(Invoice).count() == 0
        assert _reload(Product, product.id).get_counter("sales") == BoxQuantity(0, 0)
        assert _reload(Customer, customer.id).total_invoices == 0


class TestEdit:
    def test_edit_replaces_sales_and_entries(self, make_customer, make_product, make_invoice):
        customer = make_customer()
        product = make_product()
        invoice = make_invoice(customer, product, quantity={"boxes": 2, "pieces": 0}, final_amount=1000,
                               total_paid=200)

        invoice_service.update_invoice(invoice.id, {
            "items": [{"product_id": product.id, "quantity": {"boxes": 1, "pieces": 1}, "price_per_box": 500}],
            "final_amount": 800,
        })

        product = _reload(Product, product.id)
        assert product.get_counter("sales") == BoxQuantity(1, 1)
        [entry] = _sale_entries(invoice.id)
        assert entry.notes.endswith("(Edited)")

        invoice = _reload(Invoice, invoice.id)
        assert invoice.final_amount == 800
        assert invoice.pending_amount == 600
        assert invoice.payment_status == "PARTIAL"

        # Customer aggregates are left as they were at creation
        customer = _reload(Customer, customer.id)
        assert customer.total_purchase_amount == 1000

    def test_edit_pending_never_negative(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer, final_amount=1000, total_paid=1000)
        invoice_service.update_invoice(invoice.id, {
            "items": [{"product_name": "Custom", "is_custom": True, "pieces_per_box": 4,
                       "quantity": {"boxes": 1, "pieces": 0}, "price_per_box": 500}],
            "final_amount": 500,
        })
        invoice = _reload(Invoice, invoice.id)
        assert invoice.pending_amount == 0
        assert invoice.payment_status == "PAID"

    def test_edit_keeps_settlement_discount_out_of_totals(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer, final_amount=100000)
        invoice_service.update_invoice_payment(invoice.id, {"discount": 10000})

        invoice = invoice_service.update_invoice(invoice.id, {"items": [_custom_item(100000)]})

        assert invoice.final_amount == 100000
        assert invoice.discount == 10000
        assert invoice.pending_amount == 90000
        assert invoice.payment_status == "PENDING"

    def test_edit_keeps_bill_discount(self, make_customer):
        customer = make_customer()
        invoice = invoice_service.create_invoice({
            "customer_id": customer.id,
            "items": [_custom_item(100000)],
            "discount": 10000,
        })

        invoice = invoice_service.update_invoice(invoice.id, {"items": [_custom_item(100000)]})
        assert invoice.final_amount == 90000
        assert invoice.pending_amount == 90000

        invoice = invoice_service.update_invoice(invoice.id, {"items": [_custom_item(100000)], "discount": 0})
        assert invoice.final_amount == 100000
        assert invoice.bill_discount == 0


class TestDelete:
    def test_delete_reverses_everything_once(self, make_customer, make_product, make_invoice):
        customer = make_customer()
        product = make_product()
        keep = make_invoice(customer, product, quantity={"boxes": 1, "pieces": 0}, final_amount=500)
        invoice = make_invoice(customer, product, quantity={"boxes": 2, "pieces": 0}, final_amount=1000)
        invoice_service.update_invoice_payment(invoice.id, {"payment_amount": 300})

        invoice_service.delete_invoice(invoice.id)
        with pytest.raises(NotFoundError):
            invoice_service.delete_invoice(invoice.id)

        product = _reload(Product, product.id)
        assert product.get_counter("sales") == BoxQuantity(1, 0)
        assert _sale_entries(invoice.id) == []
        assert db.session.query(Payment).filter_by(invoice_id=invoice.id).count() == 0

        customer = _reload(Customer, customer.id)
        assert customer.total_invoices == 1
        assert customer.total_purchase_amount == keep.final_amount
        assert customer.total_paid_amount == 0
        assert customer.outstanding_balance == 500


class TestPaymentUpdate:
    def test_full_payment(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer, final_amount=1000)

        invoice, payment = invoice_service.update_invoice_payment(
            invoice.id, {"payment_amount": 1000, "payment_method": "upi"}
        )

        assert invoice.payment_status == "PAID"
        assert invoice.pending_amount == 0
        assert invoice.next_due_date is None
        assert payment.payment_number.startswith("PAY-")
        assert payment.payment_method == "UPI"
        assert payment.remaining_amount == 0
        assert invoice.payment_history[0]["payment_id"] == payment.id

        customer = _reload(Customer, customer.id)
        assert customer.outstanding_balance == 0
        assert customer.total_paid_amount == 1000

    def test_partial_payment_keeps_due_date(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer, final_amount=1000)
        invoice, payment = invoice_service.update_invoice_payment(
            invoice.id, {"payment_amount": 300, "next_due_date": "2030-01-15"}
        )
        assert invoice.payment_status == "PARTIAL"
        assert invoice.pending_amount == 700
        assert invoice.next_due_date.year == 2030
        assert payment.remaining_amount == 700

    def test_discount_accumulates_without_touching_final(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer, final_amount=1000)

        invoice, payment = invoice_service.update_invoice_payment(invoice.id, {"discount": 100})
        assert payment is None
        assert invoice.discount == 100
        assert invoice.final_amount == 1000
        assert invoice.pending_amount == 900

        invoice, _ = invoice_service.update_invoice_payment(invoice.id, {"payment_amount": 900, "discount": 0})
        assert invoice.payment_status == "PAID"

        customer = _reload(Customer, customer.id)
        assert customer.outstanding_balance == 0

    def test_due_date_only(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer, final_amount=1000)
        invoice, payment = invoice_service.update_invoice_payment(invoice.id, {"next_due_date": "2030-02-01"})
        assert payment is None
        assert invoice.payment_status == "PENDING"
        assert invoice.next_due_date.month == 2

    def test_empty_update_rejected(self, make_customer, make_invoice):
        invoice = make_invoice(make_customer())
        with pytest.raises(ValidationError):
            invoice_service.update_invoice_payment(invoice.id, {})


class TestQueries:
    def test_list_filters_and_search(self, make_customer, make_invoice):
        asha = make_customer(name="Asha Tiles")
        other = make_customer(name="Bharat")
        make_invoice(asha, final_amount=1000)
        paid = make_invoice(other, final_amount=500, total_paid=500)

        invoices, total = invoice_service.list_invoices(search="asha")
        assert total == 1
        assert invoices[0].customer_name == "Asha Tiles"

        invoices, total = invoice_service.list_invoices(payment_statuses=["PAID"])
        assert [i.id for i in invoices] == [paid.id]

        with pytest.raises(ValidationError):
            invoice_service.list_invoices(sort_by="nope")

    def test_get_by_number(self, make_customer, make_invoice):
        invoice = make_invoice(make_customer())
        assert invoice_service.get_invoice_by_number(invoice.invoice_number).id == invoice.id
        with pytest.raises(NotFoundError):
            invoice_service.get_invoice_by_number("INV-000000-0000")

    def test_backfill_totals(self, make_customer, make_invoice):
        invoice = make_invoice(make_customer())
        invoice.invoice_value = 0
        db.session.commit()

        assert invoice_service.backfill_invoice_totals() == 1
        assert _reload(Invoice, invoice.id).invoice_value == invoice.subtotal
