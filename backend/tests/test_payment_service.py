from datetime import datetime

import pytest

from tilebooks.errors import NotFoundError
from tilebooks.extensions import db
from tilebooks.models import Customer, Invoice
from tilebooks.services import invoice_service, payment_service


def _reload(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk)


class TestDeletePayment:
    def test_delete_reverses_invoice_and_customer(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer, final_amount=1000)
        _, first = invoice_service.update_invoice_payment(invoice.id, {"payment_amount": 400})
        _, second = invoice_service.update_invoice_payment(invoice.id, {"payment_amount": 600})
        assert _reload(Invoice, invoice.id).payment_status == "PAID"

        payment_service.delete_payment(first.id)

        invoice = _reload(Invoice, invoice.id)
        assert invoice.total_paid == 600
        assert invoice.pending_amount == 400
        assert invoice.payment_status == "PARTIAL"
        assert [entry["payment_id"] for entry in invoice.payment_history] == [second.id]

        customer = _reload(Customer, customer.id)
        assert customer.total_paid_amount == 600
        assert customer.outstanding_balance == 400

        with pytest.raises(NotFoundError):
            payment_service.delete_payment(first.id)

    def test_deleting_all_payments_returns_to_pending(self, make_customer, make_invoice):
        invoice = make_invoice(make_customer(), final_amount=1000)
        _, payment = invoice_service.update_invoice_payment(invoice.id, {"payment_amount": 1000})

        payment_service.delete_payment(payment.id)

        invoice = _reload(Invoice, invoice.id)
        assert invoice.payment_status == "PENDING"
        assert invoice.pending_amount == 1000
        assert invoice.payment_history == []


class TestListings:
    def test_list_payments_filters(self, make_customer, make_invoice):
        asha, other = make_customer(), make_customer()
        first = make_invoice(asha, final_amount=1000)
        second = make_invoice(other, final_amount=1000)
        invoice_service.update_invoice_payment(first.id, {"payment_amount": 100, "payment_method": "CARD"})
        invoice_service.update_invoice_payment(second.id, {"payment_amount": 200})
        # Discount-only updates create no payment rows
        invoice_service.update_invoice_payment(second.id, {"discount": 50})

        payments, total = payment_service.list_payments()
        assert total == 2

        payments, total = payment_service.list_payments(customer_id=asha.id)
        assert total == 1
        assert payments[0].payment_method == "CARD"

        payments, total = payment_service.list_payments(payment_method="CASH")
        assert [p.amount for p in payments] == [200]

    def test_pending_split_into_overdue_and_upcoming(self, make_customer, make_invoice):
        customer = make_customer()
        late = make_invoice(customer, final_amount=1000)
        soon = make_invoice(customer, final_amount=2000)
        undated = make_invoice(customer, final_amount=3000)
        invoice_service.update_invoice_payment(late.id, {"next_due_date": "2030-01-01"})
        invoice_service.update_invoice_payment(soon.id, {"payment_amount": 500, "next_due_date": "2030-01-20"})

        now = datetime(2030, 1, 10)
        result = payment_service.list_pending_payments(now=now)

        assert [i["invoice_id"] for i in result["overdue"]] == [late.id]
        assert result["overdue"][0]["days_overdue"] == 9
        assert [i["invoice_id"] for i in result["upcoming"]] == [soon.id]
        assert result["total_overdue_amount"] == 1000
        assert result["total_upcoming_amount"] == 1500
        assert undated.id not in [i["invoice_id"] for i in result["upcoming"]]

        result = payment_service.list_pending_payments(now=now, overdue_only=True)
        assert result["upcoming"] == []

        result = payment_service.list_pending_payments(now=now, upcoming_days=5)
        assert result["upcoming"] == []

    def test_paid_invoices_leave_the_pending_list(self, make_customer, make_invoice):
        invoice = make_invoice(make_customer(), final_amount=1000)
        invoice_service.update_invoice_payment(invoice.id, {"next_due_date": "2030-01-01"})
        invoice_service.update_invoice_payment(invoice.id, {"payment_amount": 1000})

        result = payment_service.list_pending_payments(now=datetime(2030, 2, 1))
        assert result["overdue"] == []

    def test_customer_payment_history(self, make_customer, make_invoice):
        customer = make_customer()
        invoice = make_invoice(customer, final_amount=1000)
        invoice_service.update_invoice_payment(invoice.id, {"payment_amount": 250})
        invoice_service.update_invoice_payment(invoice.id, {"payment_amount": 250})

        history = payment_service.get_customer_payment_history(customer.id)
        assert len(history["payments"]) == 2
        assert history["total_paid"] == 500
        assert history["outstanding_balance"] == 500
