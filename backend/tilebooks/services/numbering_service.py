# Overview: Sequential document numbers (invoices, returns, payments).

"""
Document Numbering

Format: {PREFIX}-{YYYY}{MM}-{seq:04d}, sequence scoped per prefix per month.

The next number is highest-existing + 1 (gaps from deleted documents are
never reused). Two writers can compute the same number; the unique
constraint on the number column rejects the second insert and the caller's
run_numbered_with_retry re-runs the operation with a fresh number.
"""

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..models import Invoice, Payment, Return
from tilebooks.time_utils import utcnow, year_month


INVOICE_PREFIXES = {"GST": "GST", "NON_GST": "INV"}
RETURN_PREFIX = "RET"
PAYMENT_PREFIX = "PAY"


def _parse_sequence(number: str) -> int:
    tail = number.rsplit("-", 1)[-1]
    try:
        return int(tail)
    except ValueError:
        return 0


def next_number(column, prefix: str, now: datetime | None = None) -> str:
    stamp = f"{prefix}-{year_month(now or utcnow())}-"
    existing = db.session.query(column).filter(column.like(f"{stamp}%")).all()
    highest = max((_parse_sequence(row[0]) for row in existing), default=0)
    return f"{stamp}{highest + 1:04d}"


def next_invoice_number(invoice_type: str, now: datetime | None = None) -> str:
    return next_number(Invoice.invoice_number, INVOICE_PREFIXES.get(invoice_type, "INV"), now)


def next_return_number(now: datetime | None = None) -> str:
    return next_number(Return.return_number, RETURN_PREFIX, now)


def next_payment_number(now: datetime | None = None) -> str:
    return next_number(Payment.payment_number, PAYMENT_PREFIX, now)
