# Overview: Service-layer operations for customers; CRUD plus the financial aggregate mutation point.

"""
Customer Service

Aggregates (total_purchase_amount, total_paid_amount, outstanding_balance,
total_invoices, last_purchase_date) are only moved through
apply_financial_delta, called by the invoice, payment and return services
inside their own transactions.

recalculate_customer_aggregates rebuilds them from invoices for operators
reconciling drift (for example after invoice edits, which do not touch
customer aggregates).
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Customer, Invoice, Return
from ..validation import ModelValidationPolicy, validate_payload
from .concurrency import commit_step, lock_for_update, run_with_retry


CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields={"name", "phone", "email", "address", "gst_number", "notes", "is_active"},
    required_on_create={"name"},
)

DUPLICATE_PHONE_MESSAGE = "Customer with this phone number already exists"


# =============================================================================
# AGGREGATE MUTATION
# =============================================================================

def apply_financial_delta(
    customer: Customer,
    *,
    purchase: int = 0,
    paid: int = 0,
    outstanding: int = 0,
    invoices: int = 0,
    last_purchase_date: datetime | None = None,
    floor_outstanding: bool = False,
) -> Customer:
    """
    Move a customer's running aggregates. All amounts are signed paise deltas.

    total_invoices never drops below zero. outstanding_balance is floored at
    zero only when floor_outstanding is set (returns); payments and discounts
    may legitimately drive it negative.
    """
    customer.total_purchase_amount = (customer.total_purchase_amount or 0) + purchase
    customer.total_paid_amount = (customer.total_paid_amount or 0) + paid

    outstanding_balance = (customer.outstanding_balance or 0) + outstanding
    if floor_outstanding:
        outstanding_balance = max(0, outstanding_balance)
    customer.outstanding_balance = outstanding_balance

    customer.total_invoices = max(0, (customer.total_invoices or 0) + invoices)
    if last_purchase_date is not None:
        customer.last_purchase_date = last_purchase_date
    return customer


def load_customer(customer_id: int, *, lock: bool = True) -> Customer:
    query = db.session.query(Customer).filter_by(id=customer_id)
    if lock:
        query = lock_for_update(query)
    customer = query.first()
    if not customer:
        raise NotFoundError("Customer not found", {"customer_id": customer_id})
    return customer


# =============================================================================
# CRUD
# =============================================================================

def _phone_taken(phone: str, exclude_id: int | None = None) -> bool:
    query = db.session.query(Customer.id).filter(Customer.phone == phone)
    if exclude_id is not None:
        query = query.filter(Customer.id != exclude_id)
    return query.first() is not None


def _normalize_optional(patch: dict) -> dict:
    # Blank optional strings are stored as NULL (keeps the phone constraint sparse)
    for key in ("phone", "email", "address", "gst_number", "notes"):
        if key in patch and patch[key] == "":
            patch[key] = None
    return patch


def create_customer(payload: dict) -> Customer:
    patch = _normalize_optional(validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=False))

    def _op():
        if patch.get("phone") and _phone_taken(patch["phone"]):
            raise ValidationError(DUPLICATE_PHONE_MESSAGE)
        customer = Customer(**patch)
        db.session.add(customer)
        try:
            commit_step("create_customer")
        except IntegrityError:
            db.session.rollback()
            raise ValidationError(DUPLICATE_PHONE_MESSAGE)
        return customer

    return run_with_retry(_op)


def update_customer(customer_id: int, payload: dict) -> Customer:
    """Profile fields only; financial aggregates are not writable here."""
    patch = _normalize_optional(validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=True))

    def _op():
        customer = load_customer(customer_id)
        if patch.get("phone") and _phone_taken(patch["phone"], exclude_id=customer.id):
            raise ValidationError(DUPLICATE_PHONE_MESSAGE)
        for key, value in patch.items():
            setattr(customer, key, value)
        try:
            commit_step("update_customer", customer_id=customer_id)
        except IntegrityError:
            db.session.rollback()
            raise ValidationError(DUPLICATE_PHONE_MESSAGE)
        return customer

    return run_with_retry(_op)


def delete_customer(customer_id: int) -> None:
    def _op():
        customer = load_customer(customer_id)
        invoice_count = db.session.query(func.count(Invoice.id)).filter(Invoice.customer_id == customer_id).scalar()
        if invoice_count:
            raise ValidationError("Cannot delete customer with existing invoices")
        db.session.delete(customer)
        commit_step("delete_customer", customer_id=customer_id)

    return run_with_retry(_op)


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer not found", {"customer_id": customer_id})
    return customer


SORTABLE_FIELDS = {
    "name": Customer.name,
    "created_at": Customer.created_at,
    "outstanding_balance": Customer.outstanding_balance,
    "total_purchase_amount": Customer.total_purchase_amount,
    "last_purchase_date": Customer.last_purchase_date,
}


def list_customers(
    *,
    search: str | None = None,
    has_outstanding: bool = False,
    active_only: bool = False,
    sort_by: str = "name",
    order: str = "asc",
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Customer], int]:
    query = db.session.query(Customer)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(or_(Customer.name.ilike(like), Customer.phone.ilike(like), Customer.email.ilike(like)))
    if has_outstanding:
        query = query.filter(Customer.outstanding_balance > 0)
    if active_only:
        query = query.filter(Customer.is_active.is_(True))

    column = SORTABLE_FIELDS.get(sort_by)
    if column is None:
        raise ValidationError(f"Cannot sort customers by {sort_by}")
    ordering = column.desc() if order == "desc" else column.asc()

    total = query.count()
    customers = query.order_by(ordering, Customer.id.asc()).offset((page - 1) * limit).limit(limit).all()
    return customers, total


def get_customer_stats(customer_id: int) -> dict:
    customer = get_customer(customer_id)

    invoice_stats = (
        db.session.query(
            func.count(Invoice.id),
            func.coalesce(func.sum(Invoice.final_amount), 0),
            func.coalesce(func.sum(Invoice.total_paid), 0),
            func.coalesce(func.sum(Invoice.pending_amount), 0),
        )
        .filter(Invoice.customer_id == customer_id)
        .one()
    )
    status_rows = (
        db.session.query(Invoice.payment_status, func.count(Invoice.id))
        .filter(Invoice.customer_id == customer_id)
        .group_by(Invoice.payment_status)
        .all()
    )
    credit_available = (
        db.session.query(func.coalesce(func.sum(Return.credit_balance), 0))
        .filter(Return.customer_id == customer_id, Return.return_type == "CREDIT", Return.credit_balance > 0)
        .scalar()
    )

    return {
        "customer": customer.to_dict(),
        "invoices": {
            "count": invoice_stats[0],
            "total_amount": invoice_stats[1],
            "total_paid": invoice_stats[2],
            "total_pending": invoice_stats[3],
            "by_payment_status": {status: count for status, count in status_rows},
        },
        "available_credit": credit_available,
    }


# =============================================================================
# RECONCILIATION
# =============================================================================

def recalculate_customer_aggregates(customer_id: int | None = None) -> list[dict]:
    """
    Recompute aggregates from invoices:
    - total_purchase_amount = sum(final_amount)
    - total_paid_amount = sum(total_paid)
    - outstanding_balance = sum(pending_amount)
    - total_invoices / last_purchase_date from the invoice set

    Returns one {customer_id, before, after} dict per customer touched.
    """
    def _op():
        query = db.session.query(Customer)
        if customer_id is not None:
            query = query.filter(Customer.id == customer_id)
        customers = lock_for_update(query).order_by(Customer.id).all()
        if customer_id is not None and not customers:
            raise NotFoundError("Customer not found", {"customer_id": customer_id})

        results = []
        for customer in customers:
            row = (
                db.session.query(
                    func.count(Invoice.id),
                    func.coalesce(func.sum(Invoice.final_amount), 0),
                    func.coalesce(func.sum(Invoice.total_paid), 0),
                    func.coalesce(func.sum(Invoice.pending_amount), 0),
                    func.max(Invoice.invoice_date),
                )
                .filter(Invoice.customer_id == customer.id)
                .one()
            )
            before = _aggregate_snapshot(customer)
            customer.total_invoices = row[0]
            customer.total_purchase_amount = row[1]
            customer.total_paid_amount = row[2]
            customer.outstanding_balance = row[3]
            customer.last_purchase_date = row[4]
            after = _aggregate_snapshot(customer)
            if before != after:
                current_app.logger.warning("Customer %s aggregates drifted: %s -> %s", customer.id, before, after)
            results.append({"customer_id": customer.id, "before": before, "after": after, "changed": before != after})

        commit_step("recalculate_customer_aggregates", customer_id=customer_id)
        return results

    return run_with_retry(_op)


def _aggregate_snapshot(customer: Customer) -> dict:
    return {
        "total_purchase_amount": customer.total_purchase_amount,
        "total_paid_amount": customer.total_paid_amount,
        "outstanding_balance": customer.outstanding_balance,
        "total_invoices": customer.total_invoices,
    }
