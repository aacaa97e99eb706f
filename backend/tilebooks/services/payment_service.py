# Overview: Service-layer operations for payment records; reversal, listings and due-date tracking.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..errors import NotFoundError
from ..extensions import db
from ..models import Invoice, Payment
from tilebooks.time_utils import to_utc_z, utcnow
from . import customer_service
from .concurrency import commit_step, lock_for_update, run_with_retry
from .invoice_service import (
    OPEN_PAYMENT_STATUSES,
    PAYMENT_METHODS,
    apply_payment_state,
    load_invoice,
)


__all__ = [
    "PAYMENT_METHODS",
    "delete_payment",
    "get_payment",
    "list_payments",
    "list_pending_payments",
    "get_customer_payment_history",
]


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found", {"payment_id": payment_id})
    return payment


def delete_payment(payment_id: int) -> None:
    """
    Undo one payment:
    - invoice total_paid -= amount, pending/status re-derived
    - customer total_paid_amount -= amount, outstanding_balance += amount
    - the matching payment_history entry is dropped
    """
    def _op():
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if not payment:
            raise NotFoundError("Payment not found", {"payment_id": payment_id})

        invoice = load_invoice(payment.invoice_id)
        invoice.total_paid = max(0, invoice.total_paid - payment.amount)
        invoice.pending_amount = max(0, invoice.final_amount - invoice.total_paid - invoice.discount)
        apply_payment_state(invoice)
        invoice.payment_history = [
            entry for entry in (invoice.payment_history or [])
            if entry.get("payment_id") != payment.id
        ]

        customer = customer_service.load_customer(payment.customer_id)
        customer_service.apply_financial_delta(customer, paid=-payment.amount, outstanding=payment.amount)

        number = payment.payment_number
        db.session.delete(payment)
        commit_step(
            "delete_payment",
            payment_id=payment_id,
            invoice_id=invoice.id,
            customer_id=customer.id,
        )
        current_app.logger.info("Deleted payment %s from invoice %s", number, invoice.invoice_number)

    return run_with_retry(_op)


def list_payments(
    *,
    invoice_id: int | None = None,
    customer_id: int | None = None,
    payment_method: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Payment], int]:
    query = db.session.query(Payment).filter(Payment.amount > 0)
    if invoice_id:
        query = query.filter(Payment.invoice_id == invoice_id)
    if customer_id:
        query = query.filter(Payment.customer_id == customer_id)
    if payment_method:
        query = query.filter(Payment.payment_method == payment_method)
    if start_date:
        query = query.filter(Payment.payment_date >= start_date)
    if end_date:
        query = query.filter(Payment.payment_date <= end_date)
    if search:
        query = query.filter(Payment.payment_number.ilike(f"%{search.strip()}%"))

    total = query.count()
    payments = (
        query.order_by(Payment.payment_date.desc(), Payment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return payments, total


def list_pending_payments(
    *,
    now: datetime | None = None,
    overdue_only: bool = False,
    upcoming_days: int | None = None,
) -> dict:
    """
    Open invoices (PENDING/PARTIAL) that carry a next_due_date, split into
    overdue (due before now) and upcoming.
    """
    now = now or utcnow()
    query = db.session.query(Invoice).filter(
        Invoice.payment_status.in_(OPEN_PAYMENT_STATUSES),
        Invoice.next_due_date.isnot(None),
    )
    if overdue_only:
        query = query.filter(Invoice.next_due_date < now)
    elif upcoming_days is not None:
        query = query.filter(Invoice.next_due_date <= now + timedelta(days=upcoming_days))

    invoices = query.order_by(Invoice.next_due_date.asc(), Invoice.id.asc()).all()

    overdue, upcoming = [], []
    for invoice in invoices:
        item = {
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "customer_id": invoice.customer_id,
            "customer_name": invoice.customer_name,
            "customer_phone": invoice.customer_phone,
            "final_amount": invoice.final_amount,
            "total_paid": invoice.total_paid,
            "pending_amount": invoice.pending_amount,
            "payment_status": invoice.payment_status,
            "next_due_date": to_utc_z(invoice.next_due_date),
            "days_overdue": max(0, (now - invoice.next_due_date).days),
        }
        (overdue if invoice.next_due_date < now else upcoming).append(item)

    return {
        "overdue": overdue,
        "upcoming": upcoming,
        "total_overdue_amount": sum(i["pending_amount"] for i in overdue),
        "total_upcoming_amount": sum(i["pending_amount"] for i in upcoming),
    }


def get_customer_payment_history(customer_id: int) -> dict:
    customer = customer_service.get_customer(customer_id)
    payments = (
        db.session.query(Payment)
        .filter(Payment.customer_id == customer_id, Payment.amount > 0)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .all()
    )
    return {
        "customer_id": customer.id,
        "customer_name": customer.name,
        "payments": [p.to_dict() for p in payments],
        "total_paid": sum(p.amount for p in payments),
        "outstanding_balance": customer.outstanding_balance,
    }
