from __future__ import annotations

from ..extensions import db
from tilebooks.time_utils import to_utc_z, utcnow
from tilebooks.units import COUNTERS, BoxQuantity, availability_status, calculate_available


class Product(db.Model):
    """
    Product master data.

    DUAL-UNIT COUNTERS:
    Four (boxes, pieces) column pairs: stock, sales, damage, returns.
    Every pair is kept normalized (pieces < pieces_per_box) by the ledger engine.
    Available quantity is derived (stock - sales - damage + returns) and never stored.

    CLASSIFICATION:
    - type: Floor, Wall, Marble, ...
    - sub_type: only meaningful (and required) for Floor
    - size: nominal size key, e.g. "1×2", "16×16"

    Money columns (price_per_box, cost_per_box) are integer paise.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.Index("ix_products_name", "name"),
        db.Index("ix_products_active", "is_active"),
        db.Index("ix_products_classification", "name", "type", "sub_type", "size"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)

    type = db.Column(db.String(64), nullable=False)
    sub_type = db.Column(db.String(64), nullable=True)
    size = db.Column(db.String(32), nullable=False)
    pieces_per_box = db.Column(db.Integer, nullable=False)

    stock_boxes = db.Column(db.Integer, nullable=False, default=0)
    stock_pieces = db.Column(db.Integer, nullable=False, default=0)
    sales_boxes = db.Column(db.Integer, nullable=False, default=0)
    sales_pieces = db.Column(db.Integer, nullable=False, default=0)
    damage_boxes = db.Column(db.Integer, nullable=False, default=0)
    damage_pieces = db.Column(db.Integer, nullable=False, default=0)
    returns_boxes = db.Column(db.Integer, nullable=False, default=0)
    returns_pieces = db.Column(db.Integer, nullable=False, default=0)

    price_per_box = db.Column(db.Integer, nullable=False, default=0)
    cost_per_box = db.Column(db.Integer, nullable=True)

    hsn_no = db.Column(db.String(32), nullable=True)
    brand = db.Column(db.String(128), nullable=True)
    location = db.Column(db.String(128), nullable=True)
    images = db.Column(db.JSON, nullable=False, default=list)
    link_3d = db.Column(db.String(512), nullable=True)

    # Boxes; 0 disables the low-stock flag
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} size={self.size!r} ppb={self.pieces_per_box}>"

    def get_counter(self, counter: str) -> BoxQuantity:
        return BoxQuantity(
            getattr(self, f"{counter}_boxes") or 0,
            getattr(self, f"{counter}_pieces") or 0,
        )

    def set_counter(self, counter: str, quantity: BoxQuantity) -> None:
        setattr(self, f"{counter}_boxes", quantity.boxes)
        setattr(self, f"{counter}_pieces", quantity.pieces)

    def counters_snapshot(self) -> dict:
        return {counter: self.get_counter(counter).to_dict() for counter in COUNTERS}

    def is_low_stock(self) -> bool:
        if not self.low_stock_threshold:
            return False
        return calculate_available(self).boxes <= self.low_stock_threshold

    def to_dict(self, include_available: bool = True) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "description": self.description,
            "type": self.type,
            "sub_type": self.sub_type,
            "size": self.size,
            "pieces_per_box": self.pieces_per_box,
            **self.counters_snapshot(),
            "price_per_box": self.price_per_box,
            "cost_per_box": self.cost_per_box,
            "hsn_no": self.hsn_no,
            "brand": self.brand,
            "location": self.location,
            "images": list(self.images or []),
            "link_3d": self.link_3d,
            "low_stock_threshold": self.low_stock_threshold,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_available:
            available = calculate_available(self)
            data["available"] = available.to_dict()
            data["availability_status"] = availability_status(available.total_pieces, self.pieces_per_box or 1)
            data["is_low_stock"] = self.is_low_stock()
        return data


class StockHistory(db.Model):
    """
    Append-only ledger of product counter mutations.

    One row per mutation (two linked rows for an exchange against a different
    product). `change_*` is the delta applied; `quantity_*` is the available
    quantity after the mutation; `counters` snapshots all four counters.

    The only post-insert write allowed is backfilling related_transaction_id
    on the first entry of an exchange pair.
    """
    __tablename__ = "stock_history"
    __table_args__ = (
        db.Index("ix_stock_history_product_created", "product_id", "created_at"),
        db.Index("ix_stock_history_invoice_action", "invoice_id", "action"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    action = db.Column(db.String(64), nullable=False, index=True)

    change_boxes = db.Column(db.Integer, nullable=False, default=0)
    change_pieces = db.Column(db.Integer, nullable=False, default=0)

    # Same-product exchange: fresh tiles handed out alongside the damaged intake
    replacement_boxes = db.Column(db.Integer, nullable=True)
    replacement_pieces = db.Column(db.Integer, nullable=True)

    quantity_boxes = db.Column(db.Integer, nullable=False, default=0)
    quantity_pieces = db.Column(db.Integer, nullable=False, default=0)
    counters = db.Column(db.JSON, nullable=True)

    notes = db.Column(db.Text, nullable=True)
    description = db.Column(db.Text, nullable=True)
    performed_by = db.Column(db.String(128), nullable=True)

    damage_type = db.Column(db.String(32), nullable=True)
    damage_reason = db.Column(db.String(255), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)

    related_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    related_transaction_id = db.Column(db.Integer, db.ForeignKey("stock_history.id"), nullable=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    product = db.relationship("Product", foreign_keys=[product_id], backref=db.backref("history", lazy="dynamic"))
    related_product = db.relationship("Product", foreign_keys=[related_product_id])

    def to_dict(self) -> dict:
        replacement = None
        if self.replacement_boxes is not None or self.replacement_pieces is not None:
            replacement = {"boxes": self.replacement_boxes or 0, "pieces": self.replacement_pieces or 0}
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "action": self.action,
            "change": {"boxes": self.change_boxes, "pieces": self.change_pieces},
            "replacement": replacement,
            "quantity": {"boxes": self.quantity_boxes, "pieces": self.quantity_pieces},
            "counters": self.counters,
            "notes": self.notes,
            "description": self.description,
            "performed_by": self.performed_by,
            "damage_type": self.damage_type,
            "damage_reason": self.damage_reason,
            "customer_name": self.customer_name,
            "related_product_id": self.related_product_id,
            "related_transaction_id": self.related_transaction_id,
            "invoice_id": self.invoice_id,
            "customer_id": self.customer_id,
            "created_at": to_utc_z(self.created_at),
        }


class DamagedInventory(db.Model):
    """
    Physical damaged stock awaiting disposal/repair.

    damage_type: shop | customer
    status: pending | disposed | repaired | returned
    """
    __tablename__ = "damaged_inventory"
    __table_args__ = (
        db.Index("ix_damaged_type_status", "damage_type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    boxes = db.Column(db.Integer, nullable=False, default=0)
    pieces = db.Column(db.Integer, nullable=False, default=0)

    damage_type = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")

    notes = db.Column(db.Text, nullable=True)
    description = db.Column(db.Text, nullable=True)
    recorded_by = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product", backref=db.backref("damaged_records", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": {"boxes": self.boxes, "pieces": self.pieces},
            "damage_type": self.damage_type,
            "status": self.status,
            "notes": self.notes,
            "description": self.description,
            "recorded_by": self.recorded_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
