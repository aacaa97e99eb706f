from __future__ import annotations

from ..extensions import db
from tilebooks.time_utils import to_utc_z, utcnow


class Invoice(db.Model):
    """
    Sale document.

    NUMBERING: "{GST|INV}-{YYYY}{MM}-{seq:04d}", sequence per type per month,
    unless the caller supplies a custom number. Uniqueness is enforced by the
    database; numbering_service retries on collision.

    TOTALS (integer paise):
    - total_before_discount = subtotal + total_tax
    - invoice_value = total_before_discount for GST, subtotal for NON_GST
    - total_amount = total_before_discount - bill_discount
    - final_amount is what the customer owes; the settlement discount
      (discount) never changes it

    PAYMENT SUB-STATE:
    payment_status is always derived by invoice_service.derive_payment_status
    from (total_paid, final_amount, discount).

    RETURN SUB-STATE:
    Credit totals only move for CREDIT-type returns.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_invoices_number"),
        db.Index("ix_invoices_customer", "customer_id"),
        db.Index("ix_invoices_date", "invoice_date"),
        db.Index("ix_invoices_payment_status", "payment_status"),
        db.Index("ix_invoices_next_due", "next_due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    invoice_number = db.Column(db.String(64), nullable=False)
    invoice_type = db.Column(db.String(16), nullable=False, default="NON_GST")  # GST, NON_GST
    invoice_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    sales_channel = db.Column(db.String(16), nullable=False, default="OFFLINE")  # OFFLINE, ONLINE

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(32), nullable=True)
    customer_address = db.Column(db.Text, nullable=True)
    customer_gst_number = db.Column(db.String(32), nullable=True)

    subtotal = db.Column(db.Integer, nullable=False, default=0)
    bill_discount = db.Column(db.Integer, nullable=False, default=0)  # applied before final_amount
    discount = db.Column(db.Integer, nullable=False, default=0)
    cgst = db.Column(db.Integer, nullable=False, default=0)
    sgst = db.Column(db.Integer, nullable=False, default=0)
    igst = db.Column(db.Integer, nullable=False, default=0)
    total_tax = db.Column(db.Integer, nullable=False, default=0)
    total_before_discount = db.Column(db.Integer, nullable=False, default=0)
    invoice_value = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Integer, nullable=False, default=0)
    round_off_amount = db.Column(db.Integer, nullable=False, default=0)
    final_amount = db.Column(db.Integer, nullable=False, default=0)

    payment_status = db.Column(db.String(16), nullable=False, default="PENDING")  # PENDING, PARTIAL, PAID
    total_paid = db.Column(db.Integer, nullable=False, default=0)
    pending_amount = db.Column(db.Integer, nullable=False, default=0)
    next_due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_history = db.Column(db.JSON, nullable=False, default=list)

    is_returned = db.Column(db.Boolean, nullable=False, default=False)
    return_date = db.Column(db.DateTime(timezone=True), nullable=True)
    total_refund_amount = db.Column(db.Integer, nullable=False, default=0)
    total_return_credit = db.Column(db.Integer, nullable=False, default=0)
    used_return_credit = db.Column(db.Integer, nullable=False, default=0)
    available_return_credit = db.Column(db.Integer, nullable=False, default=0)
    returns_history = db.Column(db.JSON, nullable=False, default=list)

    status = db.Column(db.String(16), nullable=False, default="ACTIVE")  # ACTIVE, COMPLETED, RETURNED, CANCELLED
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("invoices", lazy="dynamic"))
    lines = db.relationship(
        "InvoiceLine",
        backref="invoice",
        order_by="InvoiceLine.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} number={self.invoice_number!r} final={self.final_amount}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "invoice_type": self.invoice_type,
            "invoice_date": to_utc_z(self.invoice_date),
            "sales_channel": self.sales_channel,
            "customer_id": self.customer_id,
            "customer_details": {
                "name": self.customer_name,
                "phone": self.customer_phone,
                "address": self.customer_address,
                "gst_number": self.customer_gst_number,
            },
            "subtotal": self.subtotal,
            "bill_discount": self.bill_discount,
            "discount": self.discount,
            "cgst": self.cgst,
            "sgst": self.sgst,
            "igst": self.igst,
            "total_tax": self.total_tax,
            "total_before_discount": self.total_before_discount,
            "invoice_value": self.invoice_value,
            "total_amount": self.total_amount,
            "round_off_amount": self.round_off_amount,
            "final_amount": self.final_amount,
            "payment": {
                "status": self.payment_status,
                "total_paid": self.total_paid,
                "pending_amount": self.pending_amount,
                "next_due_date": to_utc_z(self.next_due_date) if self.next_due_date else None,
                "payment_history": list(self.payment_history or []),
            },
            "return": {
                "is_returned": self.is_returned,
                "return_date": to_utc_z(self.return_date) if self.return_date else None,
                "total_refund_amount": self.total_refund_amount,
                "total_return_credit": self.total_return_credit,
                "used_return_credit": self.used_return_credit,
                "available_return_credit": self.available_return_credit,
                "returns_history": list(self.returns_history or []),
            },
            "status": self.status,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["items"] = [line.to_dict() for line in self.lines]
        return data


class InvoiceLine(db.Model):
    """
    One invoice item. product_id is NULL for custom (non-catalog) products;
    pieces_per_box and prices are snapshots taken at sale time.
    """
    __tablename__ = "invoice_lines"
    __table_args__ = (
        db.Index("ix_invoice_lines_invoice", "invoice_id", "position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    is_custom = db.Column(db.Boolean, nullable=False, default=False)
    product_name = db.Column(db.String(255), nullable=False)
    product_type = db.Column(db.String(64), nullable=True)
    product_size = db.Column(db.String(32), nullable=True)
    hsn_no = db.Column(db.String(32), nullable=True)

    boxes = db.Column(db.Integer, nullable=False, default=0)
    pieces = db.Column(db.Integer, nullable=False, default=0)
    pieces_per_box = db.Column(db.Integer, nullable=False)

    price_per_box = db.Column(db.Integer, nullable=False, default=0)
    price_per_piece = db.Column(db.Integer, nullable=False, default=0)
    item_total = db.Column(db.Integer, nullable=False, default=0)

    # Percent: 0, 5, 12, 18, 28
    tax_rate = db.Column(db.Integer, nullable=False, default=0)
    tax_amount = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "is_custom": self.is_custom,
            "product_name": self.product_name,
            "product_type": self.product_type,
            "product_size": self.product_size,
            "hsn_no": self.hsn_no,
            "quantity": {"boxes": self.boxes, "pieces": self.pieces},
            "pieces_per_box": self.pieces_per_box,
            "price_per_box": self.price_per_box,
            "price_per_piece": self.price_per_piece,
            "item_total": self.item_total,
            "tax_rate": self.tax_rate,
            "tax_amount": self.tax_amount,
        }


class Payment(db.Model):
    """
    One money-received event against an invoice.

    remaining_amount is a snapshot of what was still owed after this payment.
    Only created for amount > 0; discount-only and due-date-only updates
    leave no Payment row.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("payment_number", name="uq_payments_number"),
        db.Index("ix_payments_customer_date", "customer_id", "payment_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_number = db.Column(db.String(64), nullable=False)

    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    invoice_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    customer_name = db.Column(db.String(255), nullable=True)

    amount = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False, default="CASH")
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    transaction_id = db.Column(db.String(128), nullable=True)
    next_due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    remaining_amount = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    invoice = db.relationship("Invoice", backref=db.backref("payments", lazy=True))
    customer = db.relationship("Customer")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_number": self.payment_number,
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "amount": self.amount,
            "payment_method": self.payment_method,
            "payment_date": to_utc_z(self.payment_date),
            "transaction_id": self.transaction_id,
            "next_due_date": to_utc_z(self.next_due_date) if self.next_due_date else None,
            "notes": self.notes,
            "remaining_amount": self.remaining_amount,
            "created_at": to_utc_z(self.created_at),
        }
