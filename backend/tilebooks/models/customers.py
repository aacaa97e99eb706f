from __future__ import annotations

from ..extensions import db
from tilebooks.time_utils import to_utc_z, utcnow


class Customer(db.Model):
    """
    Customer master data plus running financial aggregates.

    AGGREGATES (integer paise):
    - total_purchase_amount: sum of final_amount over invoices
    - total_paid_amount: money received
    - outstanding_balance: purchases - paid - discounts - returns

    Aggregates are denormalized and moved incrementally by invoice, payment
    and return operations through customer_service.apply_financial_delta.
    They are never recomputed during normal operation; see
    customer_service.recalculate_customer_aggregates for reconciliation.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("phone", name="uq_customers_phone"),
        db.Index("ix_customers_name", "name"),
        db.Index("ix_customers_outstanding", "outstanding_balance"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    # NULL when absent so the unique constraint only applies to real numbers
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.Text, nullable=True)
    gst_number = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    total_purchase_amount = db.Column(db.Integer, nullable=False, default=0)
    total_paid_amount = db.Column(db.Integer, nullable=False, default=0)
    outstanding_balance = db.Column(db.Integer, nullable=False, default=0)
    total_invoices = db.Column(db.Integer, nullable=False, default=0)
    last_purchase_date = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Customer id={self.id} name={self.name!r} outstanding={self.outstanding_balance}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
            "gst_number": self.gst_number,
            "notes": self.notes,
            "is_active": self.is_active,
            "total_purchase_amount": self.total_purchase_amount,
            "total_paid_amount": self.total_paid_amount,
            "outstanding_balance": self.outstanding_balance,
            "total_invoices": self.total_invoices,
            "last_purchase_date": to_utc_z(self.last_purchase_date) if self.last_purchase_date else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
