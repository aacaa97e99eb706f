from __future__ import annotations

from ..extensions import db
from tilebooks.time_utils import to_utc_z, utcnow


class Return(db.Model):
    """
    Customer return against an invoice.

    RETURN TYPES:
    - CREDIT: seeds a consumable balance (credit_generated/credit_used/credit_balance)
    - REFUND: refund_amount = total_return_value, no credit
    - EXCHANGE: recorded only

    Credit is consumed oldest-first by return_service.use_credit.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("return_number", name="uq_returns_number"),
        db.Index("ix_returns_customer_type", "customer_id", "return_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_number = db.Column(db.String(64), nullable=False)

    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    invoice_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    customer_address = db.Column(db.Text, nullable=True)

    total_return_value = db.Column(db.Integer, nullable=False, default=0)
    return_type = db.Column(db.String(16), nullable=False, default="CREDIT")

    credit_generated = db.Column(db.Integer, nullable=False, default=0)
    credit_used = db.Column(db.Integer, nullable=False, default=0)
    credit_balance = db.Column(db.Integer, nullable=False, default=0)

    refund_amount = db.Column(db.Integer, nullable=False, default=0)
    refund_method = db.Column(db.String(32), nullable=False, default="CASH")

    status = db.Column(db.String(16), nullable=False, default="APPROVED")
    notes = db.Column(db.Text, nullable=True)
    processed_by = db.Column(db.String(128), nullable=True)
    stock_adjusted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    invoice = db.relationship("Invoice", backref=db.backref("returns", lazy=True))
    lines = db.relationship(
        "ReturnLine",
        backref="return_record",
        order_by="ReturnLine.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "return_number": self.return_number,
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "customer_details": {
                "name": self.customer_name,
                "phone": self.customer_phone,
                "address": self.customer_address,
            },
            "total_return_value": self.total_return_value,
            "return_type": self.return_type,
            "credit_generated": self.credit_generated,
            "credit_used": self.credit_used,
            "credit_balance": self.credit_balance,
            "refund_amount": self.refund_amount,
            "refund_method": self.refund_method,
            "status": self.status,
            "notes": self.notes,
            "processed_by": self.processed_by,
            "stock_adjusted": self.stock_adjusted,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_lines:
            data["items"] = [line.to_dict() for line in self.lines]
        return data


class ReturnLine(db.Model):
    __tablename__ = "return_lines"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    product_type = db.Column(db.String(64), nullable=True)
    product_size = db.Column(db.String(32), nullable=True)
    pieces_per_box = db.Column(db.Integer, nullable=False)

    boxes = db.Column(db.Integer, nullable=False, default=0)
    pieces = db.Column(db.Integer, nullable=False, default=0)

    original_price_per_box = db.Column(db.Integer, nullable=False, default=0)
    original_item_total = db.Column(db.Integer, nullable=False, default=0)
    return_value = db.Column(db.Integer, nullable=False, default=0)

    return_reason = db.Column(db.String(32), nullable=False, default="OTHER")
    condition = db.Column(db.String(16), nullable=False, default="GOOD")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_type": self.product_type,
            "product_size": self.product_size,
            "pieces_per_box": self.pieces_per_box,
            "quantity": {"boxes": self.boxes, "pieces": self.pieces},
            "original_price_per_box": self.original_price_per_box,
            "original_item_total": self.original_item_total,
            "return_value": self.return_value,
            "return_reason": self.return_reason,
            "condition": self.condition,
        }
