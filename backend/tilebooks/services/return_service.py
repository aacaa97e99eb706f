# Overview: Service-layer operations for customer returns and the store credit they generate.

"""
Return Processing

create_return, per item:
- the item's product must appear on the invoice (NotFoundError otherwise)
- return_value = override, or boxes * price_per_box
  + pieces * price_per_box / pieces_per_box (half-up to the paisa)
- ledger: returns += quantity, one RETURN entry

Then, once per return:
- invoice: is_returned, return_date, total_refund_amount += total,
  returns_history appended; credit totals move only for CREDIT returns
- invoice pending_amount -= total (floor 0)
- customer outstanding_balance -= total (floor 0)

Credit (CREDIT returns only) is consumed oldest-first by use_credit, all or
nothing.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..errors import InsufficientCreditError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Invoice, Return, ReturnLine
from ..units import BoxQuantity, quantity_total
from ..validation import clean_text, parse_amount, parse_choice, parse_id, parse_quantity
from tilebooks.time_utils import to_utc_z, utcnow
from . import customer_service, numbering_service
from .concurrency import commit_step, flush_step, lock_for_update, run_numbered_with_retry, run_with_retry
from .invoice_service import PAYMENT_METHODS, load_invoice, round_half_up
from .stock_ledger_service import load_product, record_invoice_return


RETURN_TYPES = ["CREDIT", "REFUND", "EXCHANGE"]
RETURN_REASONS = ["DAMAGED", "WRONG_ITEM", "QUALITY_ISSUE", "CUSTOMER_REQUEST", "EXCHANGE", "OTHER"]
ITEM_CONDITIONS = ["GOOD", "DAMAGED", "DEFECTIVE"]


def line_return_value(quantity: BoxQuantity, price_per_box: int, pieces_per_box: int) -> int:
    """Value of a returned quantity at the original box price, rounded half-up to the paisa."""
    return round_half_up(
        quantity.boxes * price_per_box * pieces_per_box + quantity.pieces * price_per_box,
        pieces_per_box,
    )


def _find_invoice_line(invoice: Invoice, product_id: int):
    for line in invoice.lines:
        if line.product_id == product_id:
            return line
    raise NotFoundError(
        f"Product {product_id} not found in invoice {invoice.invoice_number}",
        {"invoice_id": invoice.id, "product_id": product_id},
    )


# =============================================================================
# CREATE
# =============================================================================

def create_return(
    invoice_id: int,
    items,
    *,
    return_type: str | None = None,
    refund_method: str | None = None,
    notes: str | None = None,
    processed_by: str | None = None,
) -> Return:
    if not isinstance(items, list) or not items:
        raise ValidationError("Invoice and items are required")
    return_type = parse_choice(return_type, "return_type", RETURN_TYPES, default="CREDIT")
    refund_method = parse_choice(refund_method, "refund_method", PAYMENT_METHODS, default="CASH")

    parsed_items = []
    for i, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{i}] must be an object")
        parsed_items.append({
            "product_id": parse_id(raw.get("product_id"), f"items[{i}].product_id"),
            "quantity": parse_quantity(raw.get("quantity"), f"items[{i}].quantity"),
            "return_value": parse_amount(raw.get("return_value"), f"items[{i}].return_value", default=None),
            "return_reason": parse_choice(raw.get("return_reason"), f"items[{i}].return_reason",
                                          RETURN_REASONS, default="OTHER"),
            "condition": parse_choice(raw.get("condition"), f"items[{i}].condition",
                                      ITEM_CONDITIONS, default="GOOD"),
        })

    def _op():
        invoice = load_invoice(invoice_id)
        customer = customer_service.load_customer(invoice.customer_id)

        lines = []
        for item in parsed_items:
            invoice_line = _find_invoice_line(invoice, item["product_id"])
            product = load_product(item["product_id"])
            quantity = item["quantity"]
            if quantity_total(quantity, product.pieces_per_box) <= 0:
                raise ValidationError("Must return at least 1 piece")

            ppb = invoice_line.pieces_per_box or product.pieces_per_box
            value = item["return_value"]
            if value is None:
                value = line_return_value(quantity, invoice_line.price_per_box, ppb)

            record_invoice_return(
                product, quantity,
                invoice=invoice, customer_id=customer.id, reason=item["return_reason"],
            )
            lines.append(ReturnLine(
                product_id=product.id,
                product_name=invoice_line.product_name,
                product_type=invoice_line.product_type,
                product_size=invoice_line.product_size,
                pieces_per_box=ppb,
                boxes=quantity.boxes,
                pieces=quantity.pieces,
                original_price_per_box=invoice_line.price_per_box,
                original_item_total=invoice_line.item_total,
                return_value=value,
                return_reason=item["return_reason"],
                condition=item["condition"],
            ))
        flush_step("return_ledger_entries", invoice_id=invoice.id)

        total = sum(line.return_value for line in lines)
        record = Return(
            return_number=numbering_service.next_return_number(),
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            customer_id=customer.id,
            customer_name=invoice.customer_name,
            customer_phone=invoice.customer_phone,
            customer_address=invoice.customer_address,
            total_return_value=total,
            return_type=return_type,
            credit_generated=total if return_type == "CREDIT" else 0,
            credit_used=0,
            credit_balance=total if return_type == "CREDIT" else 0,
            refund_amount=total if return_type == "REFUND" else 0,
            refund_method=refund_method,
            status="APPROVED",
            notes=clean_text(notes),
            processed_by=clean_text(processed_by),
            stock_adjusted=True,
        )
        record.lines = lines
        db.session.add(record)
        flush_step("create_return", invoice_id=invoice.id, customer_id=customer.id)

        now = utcnow()
        invoice.is_returned = True
        invoice.return_date = now
        invoice.total_refund_amount = (invoice.total_refund_amount or 0) + total
        if return_type == "CREDIT":
            invoice.total_return_credit = (invoice.total_return_credit or 0) + total
            invoice.available_return_credit = (invoice.available_return_credit or 0) + total
        invoice.returns_history = list(invoice.returns_history or []) + [{
            "return_id": record.id,
            "return_number": record.return_number,
            "return_type": return_type,
            "total_return_value": total,
            "return_date": to_utc_z(now),
        }]
        invoice.pending_amount = max(0, (invoice.pending_amount or 0) - total)

        customer_service.apply_financial_delta(customer, outstanding=-total, floor_outstanding=True)

        commit_step("return_invoice_customer_update", return_id=record.id, invoice_id=invoice.id,
                    customer_id=customer.id)
        current_app.logger.info(
            "Created return %s on invoice %s (%s, value=%s)",
            record.return_number, invoice.invoice_number, return_type, total,
        )
        return record

    return run_numbered_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_return(return_id: int) -> Return:
    record = db.session.get(Return, return_id)
    if not record:
        raise NotFoundError("Return not found", {"return_id": return_id})
    return record


def list_returns(
    *,
    invoice_id: int | None = None,
    customer_id: int | None = None,
    return_type: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Return], int]:
    query = db.session.query(Return)
    if invoice_id:
        query = query.filter(Return.invoice_id == invoice_id)
    if customer_id:
        query = query.filter(Return.customer_id == customer_id)
    if return_type:
        query = query.filter(Return.return_type == return_type)
    if start_date:
        query = query.filter(Return.created_at >= start_date)
    if end_date:
        query = query.filter(Return.created_at <= end_date)

    total = query.count()
    records = (
        query.order_by(Return.created_at.desc(), Return.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return records, total


def _credit_returns_query(customer_id: int):
    return (
        db.session.query(Return)
        .filter(
            Return.customer_id == customer_id,
            Return.return_type == "CREDIT",
            Return.credit_balance > 0,
        )
        .order_by(Return.created_at.asc(), Return.id.asc())
    )


def get_customer_credit(customer_id: int) -> dict:
    customer_service.get_customer(customer_id)
    returns = _credit_returns_query(customer_id).all()
    return {
        "customer_id": customer_id,
        "total_credit": sum(r.credit_balance for r in returns),
        "returns": [
            {
                "return_id": r.id,
                "return_number": r.return_number,
                "invoice_number": r.invoice_number,
                "credit_generated": r.credit_generated,
                "credit_used": r.credit_used,
                "credit_balance": r.credit_balance,
                "created_at": to_utc_z(r.created_at),
            }
            for r in returns
        ],
    }


# =============================================================================
# CREDIT CONSUMPTION
# =============================================================================

def use_credit(customer_id: int, invoice_id: int, amount) -> dict:
    """
    Consume `amount` paise of the customer's CREDIT-return balance,
    oldest return first. Either the whole amount is deducted or nothing is.
    """
    amount = parse_amount(amount, "amount")
    if amount <= 0:
        raise ValidationError("amount must be greater than 0")

    def _op():
        customer = customer_service.load_customer(customer_id)
        invoice = load_invoice(invoice_id)
        if invoice.customer_id != customer.id:
            raise ValidationError("Invoice does not belong to this customer")

        returns = lock_for_update(_credit_returns_query(customer.id)).all()
        available = sum(r.credit_balance for r in returns)
        if amount > available:
            raise InsufficientCreditError(
                f"Insufficient credit. Available: {available}, Requested: {amount}",
                {"customer_id": customer.id, "available": available, "requested": amount},
            )

        remaining = amount
        deductions = []
        for record in returns:
            if remaining <= 0:
                break
            take = min(record.credit_balance, remaining)
            record.credit_used += take
            record.credit_balance -= take
            remaining -= take

            source = record.invoice
            source.used_return_credit = (source.used_return_credit or 0) + take
            source.available_return_credit = max(0, (source.available_return_credit or 0) - take)
            deductions.append({"return_id": record.id, "return_number": record.return_number, "amount": take})

        commit_step("use_credit", customer_id=customer.id, invoice_id=invoice.id)
        current_app.logger.info(
            "Customer %s used %s credit on invoice %s across %s returns",
            customer.id, amount, invoice.invoice_number, len(deductions),
        )
        return {
            "customer_id": customer.id,
            "invoice_id": invoice.id,
            "credit_used": amount,
            "remaining_credit": available - amount,
            "deductions": deductions,
        }

    return run_with_retry(_op)
