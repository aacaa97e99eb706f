# Overview: Read-only reporting queries; inventory summary and dashboard statistics.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_

from ..extensions import db
from ..models import Customer, Invoice, Product
from ..units import availability_status, calculate_available, counter_total, damage_percentage, return_rate
from tilebooks.time_utils import start_of_day, start_of_month, to_utc_z, utcnow
from .invoice_service import OPEN_PAYMENT_STATUSES


def inventory_report() -> dict:
    """Per-product counters and health figures for every active product."""
    products = (
        db.session.query(Product)
        .filter(Product.is_active.is_(True))
        .order_by(Product.type.asc(), Product.name.asc(), Product.id.asc())
        .all()
    )

    rows = []
    status_counts = {"good": 0, "low": 0, "critical": 0, "out_of_stock": 0}
    total_value = 0
    for product in products:
        available = calculate_available(product)
        status = availability_status(available.total_pieces, product.pieces_per_box)
        status_counts[status] += 1
        # Stock value at box price, loose pieces pro rata
        value = (available.total_pieces * (product.price_per_box or 0)) // product.pieces_per_box
        total_value += value

        rows.append({
            "id": product.id,
            "name": product.name,
            "type": product.type,
            "sub_type": product.sub_type,
            "size": product.size,
            "pieces_per_box": product.pieces_per_box,
            **product.counters_snapshot(),
            "available": available.to_dict(),
            "availability_status": status,
            "is_low_stock": product.is_low_stock(),
            "damage_percentage": damage_percentage(counter_total(product, "damage"), counter_total(product, "stock")),
            "return_rate": return_rate(counter_total(product, "returns"), counter_total(product, "sales")),
            "stock_value": value,
        })

    return {
        "generated_at": to_utc_z(utcnow()),
        "products": rows,
        "summary": {
            "product_count": len(rows),
            "by_status": status_counts,
            "low_stock_count": sum(1 for r in rows if r["is_low_stock"]),
            "total_stock_value": total_value,
        },
    }


def _invoice_window(since: datetime):
    return or_(Invoice.created_at >= since, Invoice.invoice_date >= since)


def dashboard_stats(now: datetime | None = None) -> dict:
    now = now or utcnow()
    today = start_of_day(now)
    month = start_of_month(now)

    def _count_and_sales(since: datetime):
        count, sales = (
            db.session.query(func.count(Invoice.id), func.coalesce(func.sum(Invoice.final_amount), 0))
            .filter(_invoice_window(since))
            .one()
        )
        return {"invoices": count, "sales": sales}

    pending_count, pending_amount = (
        db.session.query(func.count(Invoice.id), func.coalesce(func.sum(Invoice.pending_amount), 0))
        .filter(Invoice.payment_status.in_(OPEN_PAYMENT_STATUSES))
        .one()
    )

    return {
        "today": _count_and_sales(today),
        "this_month": _count_and_sales(month),
        "pending": {"invoices": pending_count, "amount": pending_amount},
        "customers": db.session.query(func.count(Customer.id)).scalar(),
        "generated_at": to_utc_z(now),
    }
