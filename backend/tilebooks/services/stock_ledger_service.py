# Overview: Service-layer operations for the stock ledger; product counters and their append-only history.

"""
Stock Ledger Engine

Every mutation of a product's four counters (stock, sales, damage, returns)
goes through this module and writes a StockHistory row in the same
transaction.

PROTOCOL (per scenario):
1. Validate the request quantity (non-negative, at least one piece).
2. For scenarios that consume availability, check requested <= available
   in total-piece space; InsufficientStockError leaves counters untouched.
3. Mutate exactly the listed counters in total-piece space and re-normalize.
4. Snapshot available quantity + all counters onto the history row.

SCENARIOS:
- add_stock:                       stock += q
- sell_stock:                      sales += q            (availability checked)
- record_customer_return:          sales -= q (floor 0), returns += q
- record_shop_damage:              damage += q           (availability checked)
- record_customer_damage_exchange: damage += d, returns += d, sales += r
                                   (availability checked for r)
- exchange with a different product (record_damage "exchange-different"):
  damaged product damage += d, returns += d; replacement product sales += r

Invoice and return services use the apply_* / record_invoice_* primitives
inside their own transactions.

REPLAY:
ACTION_EFFECTS describes how each action tag moves counters, so
replay_product_history can rebuild counters from the ledger and report drift.
Removing an invoice's SALE entries after a floored reversal can leave replay
and the counters apart; record_ledger_correction then writes a snapshot
entry that replay restarts from.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import or_

from ..errors import InsufficientStockError, NotFoundError, ValidationError
from ..extensions import db
from ..models import DamagedInventory, Product, StockHistory
from ..units import (
    COUNTERS,
    USER_CONFIGURABLE_SIZES,
    BoxQuantity,
    calculate_available,
    format_quantity,
    get_pieces_per_box,
    normalize_pieces,
    normalize_size,
    quantity_total,
    to_total_pieces,
    validate_quantity,
)
from ..validation import clean_text, coerce_int, parse_amount, parse_count, parse_id, parse_quantity
from .concurrency import commit_step, flush_step, lock_for_update, run_with_retry


# =============================================================================
# ACTION TAGS (CONSTANTS)
# =============================================================================

ACTION_ADD = "add"
ACTION_SELL = "sell"
ACTION_SALE = "SALE"
ACTION_RETURN = "return"
ACTION_INVOICE_RETURN = "RETURN"
ACTION_DAMAGE_SHOP = "damage_shop"
ACTION_DAMAGE_CUSTOMER = "damage_customer"
ACTION_PRODUCT_UPDATE = "Product Update"
ACTION_LEDGER_CORRECTION = "Ledger Correction"
ACTION_DAMAGE_OWN = "Damage (Own)"
ACTION_DAMAGE_REFUND = "Damage (Customer Refund)"
ACTION_EXCHANGE_SAME = "Damage (Customer Exchange - Same)"
ACTION_EXCHANGE_DIFFERENT = "Damage (Customer Exchange - Different)"
ACTION_SALE_EXCHANGE = "Sale (Exchange)"

# (counter, sign, source) triples; source "change" or "replacement"
ACTION_EFFECTS = {
    ACTION_ADD: (("stock", 1, "change"),),
    ACTION_SELL: (("sales", 1, "change"),),
    ACTION_SALE: (("sales", 1, "change"),),
    ACTION_SALE_EXCHANGE: (("sales", 1, "change"),),
    ACTION_RETURN: (("sales", -1, "change"), ("returns", 1, "change")),
    ACTION_INVOICE_RETURN: (("returns", 1, "change"),),
    ACTION_DAMAGE_SHOP: (("damage", 1, "change"),),
    ACTION_DAMAGE_OWN: (("damage", 1, "change"),),
    ACTION_DAMAGE_REFUND: (("damage", 1, "change"), ("returns", 1, "change")),
    ACTION_DAMAGE_CUSTOMER: (("damage", 1, "change"), ("returns", 1, "change"), ("sales", 1, "replacement")),
    ACTION_EXCHANGE_SAME: (("damage", 1, "change"), ("returns", 1, "change"), ("sales", 1, "replacement")),
    ACTION_EXCHANGE_DIFFERENT: (("damage", 1, "change"), ("returns", 1, "change")),
}

# Replay restarts from the counters snapshot of these entries
SNAPSHOT_ACTIONS = (ACTION_PRODUCT_UPDATE, ACTION_LEDGER_CORRECTION)

DAMAGE_TYPES = ("own", "customer-refund", "exchange-same", "exchange-different")
DAMAGED_STATUSES = ("pending", "disposed", "repaired", "returned")
FLOOR_TYPE = "Floor"
DEFAULT_ACTOR = "system"


# =============================================================================
# INTERNAL PRIMITIVES (no commit)
# =============================================================================

def load_product(product_id: int, *, label: str = "Product", lock: bool = True) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if not product:
        raise NotFoundError(f"{label} not found", {"product_id": product_id})
    return product


def _requested_pieces(product: Product, quantity: BoxQuantity) -> int:
    return quantity_total(quantity, product.pieces_per_box)


def _require_some(total_pieces: int, operation: str) -> None:
    if total_pieces <= 0:
        raise ValidationError(f"Must {operation} at least 1 piece")


def ensure_available(product: Product, needed_pieces: int, operation: str) -> None:
    available = calculate_available(product).total_pieces
    check = validate_quantity(needed_pieces, available, operation)
    if check.is_valid:
        return
    if needed_pieces > available:
        raise InsufficientStockError(
            check.message,
            {"product_id": product.id, "available": available, "needed": needed_pieces},
        )
    raise ValidationError(check.message)


def apply_delta(product: Product, counter: str, delta_pieces: int) -> BoxQuantity:
    """Move one counter by delta_pieces, flooring at zero, and store it normalized."""
    ppb = product.pieces_per_box
    current = to_total_pieces(
        getattr(product, f"{counter}_boxes") or 0,
        getattr(product, f"{counter}_pieces") or 0,
        ppb,
    )
    updated = normalize_pieces(max(0, current + delta_pieces), ppb)
    product.set_counter(counter, updated)
    return updated


def append_history(
    product: Product,
    action: str,
    change: BoxQuantity,
    *,
    replacement: BoxQuantity | None = None,
    notes: str | None = None,
    description: str | None = None,
    performed_by: str | None = None,
    **links,
) -> StockHistory:
    available = calculate_available(product)
    entry = StockHistory(
        product_id=product.id,
        action=action,
        change_boxes=change.boxes,
        change_pieces=change.pieces,
        replacement_boxes=replacement.boxes if replacement is not None else None,
        replacement_pieces=replacement.pieces if replacement is not None else None,
        quantity_boxes=available.boxes,
        quantity_pieces=available.pieces,
        counters=product.counters_snapshot(),
        notes=notes,
        description=description,
        performed_by=performed_by or DEFAULT_ACTOR,
        **links,
    )
    db.session.add(entry)
    return entry


def _record_damaged_inventory(product: Product, quantity: BoxQuantity, damage_type: str, *,
                              status: str = "pending", notes=None, description=None, recorded_by=None):
    record = DamagedInventory(
        product_id=product.id,
        boxes=quantity.boxes,
        pieces=quantity.pieces,
        damage_type=damage_type,
        status=status,
        notes=notes,
        description=description,
        recorded_by=recorded_by or DEFAULT_ACTOR,
    )
    db.session.add(record)
    return record


def record_invoice_sale(product: Product, quantity: BoxQuantity, *, invoice, customer_id, edited: bool = False) -> StockHistory:
    """sales += quantity with one SALE entry. Availability is NOT enforced for invoices."""
    total = _requested_pieces(product, quantity)
    apply_delta(product, "sales", total)
    notes = f"Sale - Invoice: {invoice.invoice_number}" + (" (Edited)" if edited else "")
    return append_history(
        product,
        ACTION_SALE,
        normalize_pieces(total, product.pieces_per_box),
        notes=notes,
        invoice_id=invoice.id,
        customer_id=customer_id,
    )


def reverse_invoice_sale(product: Product, quantity: BoxQuantity) -> None:
    """Undo a SALE contribution; floored at zero."""
    apply_delta(product, "sales", -_requested_pieces(product, quantity))


def record_ledger_correction(product: Product, *, notes: str) -> StockHistory | None:
    """
    Append a "Ledger Correction" entry when replay no longer reproduces the
    stored counters. Returns None when the ledger still agrees.
    """
    result = replay_product_history(product.id)
    if result["consistent"]:
        return None
    current_app.logger.warning(
        "Ledger correction for product %s (%s): %s", product.id, notes, result["drift"],
    )
    return append_history(
        product,
        ACTION_LEDGER_CORRECTION,
        BoxQuantity(0, 0),
        notes=notes,
    )


def record_invoice_return(product: Product, quantity: BoxQuantity, *, invoice, customer_id, reason: str | None) -> StockHistory:
    total = _requested_pieces(product, quantity)
    _require_some(total, "return")
    apply_delta(product, "returns", total)
    return append_history(
        product,
        ACTION_INVOICE_RETURN,
        normalize_pieces(total, product.pieces_per_box),
        notes=f"Customer return - Invoice #{invoice.invoice_number} - {reason or 'Not specified'}",
        invoice_id=invoice.id,
        customer_id=customer_id,
    )


# =============================================================================
# SCENARIOS
# =============================================================================

def add_stock(product_id: int, quantity: BoxQuantity, *, notes: str | None = None,
              performed_by: str | None = None) -> StockHistory:
    """Scenario 1: supplier delivery. stock += quantity."""
    def _op():
        product = load_product(product_id)
        total = _requested_pieces(product, quantity)
        _require_some(total, "add")

        apply_delta(product, "stock", total)
        entry = append_history(
            product, ACTION_ADD, normalize_pieces(total, product.pieces_per_box),
            notes=notes, performed_by=performed_by,
        )
        commit_step("add_stock", product_id=product_id)
        return entry

    return run_with_retry(_op)


def sell_stock(product_id: int, quantity: BoxQuantity, *, notes: str | None = None,
               performed_by: str | None = None) -> StockHistory:
    """Scenario 2: counter sale outside an invoice. sales += quantity."""
    def _op():
        product = load_product(product_id)
        total = _requested_pieces(product, quantity)
        ensure_available(product, total, "sell")

        apply_delta(product, "sales", total)
        entry = append_history(
            product, ACTION_SELL, normalize_pieces(total, product.pieces_per_box),
            notes=notes, performed_by=performed_by,
        )
        commit_step("sell_stock", product_id=product_id)
        return entry

    return run_with_retry(_op)


def record_customer_return(product_id: int, quantity: BoxQuantity, *, notes: str | None = None,
                           performed_by: str | None = None) -> StockHistory:
    """Scenario 3: goods back from a customer. sales -= quantity (floor 0), returns += quantity."""
    def _op():
        product = load_product(product_id)
        total = _requested_pieces(product, quantity)
        _require_some(total, "return")

        apply_delta(product, "sales", -total)
        apply_delta(product, "returns", total)
        entry = append_history(
            product, ACTION_RETURN, normalize_pieces(total, product.pieces_per_box),
            notes=notes, performed_by=performed_by,
        )
        commit_step("record_customer_return", product_id=product_id)
        return entry

    return run_with_retry(_op)


def _shop_damage(product: Product, quantity: BoxQuantity, *, action: str, notes, description,
                 performed_by, damage_type: str, damage_reason=None) -> StockHistory:
    total = _requested_pieces(product, quantity)
    ensure_available(product, total, "damage")

    change = normalize_pieces(total, product.pieces_per_box)
    apply_delta(product, "damage", total)
    _record_damaged_inventory(
        product, change, "shop",
        notes=notes, description=description or notes, recorded_by=performed_by,
    )
    return append_history(
        product, action, change,
        notes=notes, description=description, performed_by=performed_by,
        damage_type=damage_type, damage_reason=damage_reason,
    )


def record_shop_damage(product_id: int, quantity: BoxQuantity, *, notes: str | None = None,
                       performed_by: str | None = None) -> StockHistory:
    """Scenario 4: tiles broken in the shop. damage += quantity."""
    def _op():
        product = load_product(product_id)
        entry = _shop_damage(
            product, quantity, action=ACTION_DAMAGE_SHOP, notes=notes, description=None,
            performed_by=performed_by, damage_type="shop",
        )
        commit_step("record_shop_damage", product_id=product_id)
        return entry

    return run_with_retry(_op)


def _same_product_exchange(product: Product, damaged: BoxQuantity, replacement: BoxQuantity, *, action: str,
                           notes, description, performed_by, damage_type: str,
                           damage_reason=None, customer_name=None) -> StockHistory:
    ppb = product.pieces_per_box
    damaged_total = _requested_pieces(product, damaged)
    replacement_total = _requested_pieces(product, replacement)
    _require_some(damaged_total, "exchange")
    if replacement_total > 0:
        ensure_available(product, replacement_total, "exchange")

    damaged_change = normalize_pieces(damaged_total, ppb)
    replacement_change = normalize_pieces(replacement_total, ppb)

    apply_delta(product, "damage", damaged_total)
    apply_delta(product, "returns", damaged_total)
    apply_delta(product, "sales", replacement_total)

    _record_damaged_inventory(
        product, damaged_change, "customer", status="returned",
        notes=notes, description=description or notes, recorded_by=performed_by,
    )
    return append_history(
        product, action, damaged_change,
        replacement=replacement_change,
        notes=notes, description=description, performed_by=performed_by,
        damage_type=damage_type, damage_reason=damage_reason, customer_name=customer_name,
    )


def record_customer_damage_exchange(product_id: int, damaged: BoxQuantity, replacement: BoxQuantity, *,
                                    notes: str | None = None, performed_by: str | None = None) -> StockHistory:
    """
    Scenario 5: customer brings back damaged tiles and takes fresh ones of the same product.

    damage += damaged, returns += damaged, sales += replacement.
    """
    def _op():
        product = load_product(product_id)
        entry = _same_product_exchange(
            product, damaged, replacement, action=ACTION_DAMAGE_CUSTOMER, notes=notes, description=None,
            performed_by=performed_by, damage_type="customer",
        )
        commit_step("record_customer_damage_exchange", product_id=product_id)
        return entry

    return run_with_retry(_op)


def _customer_suffix(customer_name: str | None) -> str:
    return f" - Customer: {customer_name}" if customer_name else ""


def record_damage(
    product_id: int,
    damage_type: str,
    damaged: BoxQuantity,
    *,
    replacement: BoxQuantity | None = None,
    replacement_product_id: int | None = None,
    customer_name: str | None = None,
    damage_reason: str | None = None,
    description: str | None = None,
    performed_by: str | None = None,
) -> list[StockHistory]:
    """
    Record one of the four damage variants with generated notes.

    - own:                shop damage (availability checked)
    - customer-refund:    damage += d, returns += d
    - exchange-same:      same-product exchange
    - exchange-different: two linked entries across two products

    Returns the history entries written (two for exchange-different).
    """
    if damage_type not in DAMAGE_TYPES:
        raise ValidationError(
            "Invalid damage type. Must be: own, customer-refund, exchange-same, or exchange-different"
        )
    if damage_type == "exchange-different" and (not replacement_product_id or replacement is None):
        raise ValidationError("Replacement product and quantity required for different product exchange")

    replacement = replacement or BoxQuantity(0, 0)
    reason_text = damage_reason or "Not specified"

    def _op():
        product = load_product(product_id)

        if damage_type == "own":
            change = normalize_pieces(_requested_pieces(product, damaged), product.pieces_per_box)
            notes = f"Own damage: {format_quantity(change.boxes, change.pieces)} - Reason: {reason_text}"
            entries = [_shop_damage(
                product, damaged, action=ACTION_DAMAGE_OWN, notes=notes, description=description,
                performed_by=performed_by, damage_type=damage_type, damage_reason=damage_reason,
            )]

        elif damage_type == "customer-refund":
            total = _requested_pieces(product, damaged)
            _require_some(total, "return")
            change = normalize_pieces(total, product.pieces_per_box)
            apply_delta(product, "damage", total)
            apply_delta(product, "returns", total)
            notes = (
                f"Customer return (damaged): {format_quantity(change.boxes, change.pieces)}"
                f"{_customer_suffix(customer_name)} - Refunded - Reason: {reason_text}"
            )
            _record_damaged_inventory(
                product, change, "customer", status="returned",
                notes=notes, description=description, recorded_by=performed_by,
            )
            entries = [append_history(
                product, ACTION_DAMAGE_REFUND, change,
                notes=notes, description=description, performed_by=performed_by,
                damage_type=damage_type, damage_reason=damage_reason, customer_name=customer_name,
            )]

        elif damage_type == "exchange-same":
            ppb = product.pieces_per_box
            d = normalize_pieces(_requested_pieces(product, damaged), ppb)
            r = normalize_pieces(_requested_pieces(product, replacement), ppb)
            notes = (
                f"Customer exchange (same): {format_quantity(d.boxes, d.pieces)} damaged returned, "
                f"{format_quantity(r.boxes, r.pieces)} fresh given{_customer_suffix(customer_name)}"
            )
            entries = [_same_product_exchange(
                product, damaged, replacement, action=ACTION_EXCHANGE_SAME, notes=notes,
                description=description, performed_by=performed_by, damage_type=damage_type,
                damage_reason=damage_reason, customer_name=customer_name,
            )]

        else:
            entries = _exchange_different(
                product, damaged, replacement_product_id, replacement,
                customer_name=customer_name, damage_reason=damage_reason,
                description=description, performed_by=performed_by,
            )

        commit_step("record_damage", product_id=product_id, replacement_product_id=replacement_product_id)
        return entries

    return run_with_retry(_op)


def _exchange_different(product: Product, damaged: BoxQuantity, replacement_product_id: int,
                        replacement: BoxQuantity, *, customer_name, damage_reason, description,
                        performed_by) -> list[StockHistory]:
    if replacement_product_id == product.id:
        raise ValidationError("Replacement product must differ from the damaged product; use exchange-same")

    replacement_product = load_product(replacement_product_id, label="Replacement product")

    damaged_total = _requested_pieces(product, damaged)
    replacement_total = _requested_pieces(replacement_product, replacement)
    _require_some(damaged_total, "exchange")
    _require_some(replacement_total, "exchange")
    ensure_available(replacement_product, replacement_total, "exchange")

    d = normalize_pieces(damaged_total, product.pieces_per_box)
    r = normalize_pieces(replacement_total, replacement_product.pieces_per_box)

    apply_delta(product, "damage", damaged_total)
    apply_delta(product, "returns", damaged_total)
    apply_delta(replacement_product, "sales", replacement_total)

    suffix = _customer_suffix(customer_name)
    damaged_notes = (
        f"Customer exchange: {format_quantity(d.boxes, d.pieces)} damaged returned, "
        f"exchanged with {replacement_product.name}{suffix}"
    )
    _record_damaged_inventory(
        product, d, "customer", status="returned",
        notes=damaged_notes, description=description, recorded_by=performed_by,
    )
    damaged_entry = append_history(
        product, ACTION_EXCHANGE_DIFFERENT, d,
        notes=damaged_notes, description=description, performed_by=performed_by,
        damage_type="exchange-different", damage_reason=damage_reason, customer_name=customer_name,
        related_product_id=replacement_product.id,
    )
    flush_step("exchange damaged entry", product_id=product.id)

    replacement_entry = append_history(
        replacement_product, ACTION_SALE_EXCHANGE, r,
        notes=f"Exchange for damaged {product.name} - {format_quantity(r.boxes, r.pieces)} given{suffix}",
        description=description, performed_by=performed_by, customer_name=customer_name,
        related_product_id=product.id, related_transaction_id=damaged_entry.id,
    )
    flush_step("exchange replacement entry", product_id=replacement_product.id, damaged_entry_id=damaged_entry.id)

    # Only post-insert write a history row ever receives
    damaged_entry.related_transaction_id = replacement_entry.id
    return [damaged_entry, replacement_entry]


# =============================================================================
# PRODUCT MASTER OPERATIONS
# =============================================================================

PRODUCT_TEXT_FIELDS = ("sku", "description", "hsn_no", "brand", "location", "link_3d")


def _resolve_pieces_per_box(size: str, explicit) -> int:
    if explicit is not None and explicit != "":
        ppb = coerce_int(explicit, "pieces_per_box")
        if ppb <= 0:
            raise ValidationError("pieces_per_box must be a positive integer")
        # 1×2 only allows the user's 5 or 6; other sizes take any explicit override
        if normalize_size(size) in USER_CONFIGURABLE_SIZES:
            get_pieces_per_box(size, ppb)
        return ppb
    ppb = get_pieces_per_box(size)
    if ppb is None:
        raise ValidationError(f"Unknown size {size}; pieces_per_box is required")
    return ppb


def _parse_images(value) -> list:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError("images must be a list of URLs")
    return [v.strip() for v in value if v.strip()]


def create_product(payload: dict, *, performed_by: str | None = None) -> tuple[Product, bool]:
    """
    Create a product, or merge the given stock into an existing active
    product with the same name/type/sub_type/size.

    Returns (product, merged).
    """
    payload = payload or {}
    product_type = clean_text(payload.get("type"))
    size = normalize_size(clean_text(payload.get("size")))
    if not product_type or not size:
        raise ValidationError("Type and Size are required")

    sub_type = clean_text(payload.get("sub_type"))
    if product_type == FLOOR_TYPE and not sub_type:
        raise ValidationError("SubType is required for Floor tiles")
    if product_type != FLOOR_TYPE:
        sub_type = None

    name = clean_text(payload.get("name"))
    initial = parse_quantity(payload.get("stock"), "stock")

    def _op():
        if name:
            existing = lock_for_update(
                db.session.query(Product).filter_by(
                    name=name, type=product_type, sub_type=sub_type, size=size, is_active=True,
                )
            ).first()
            if existing:
                total = _requested_pieces(existing, initial)
                apply_delta(existing, "stock", total)
                append_history(
                    existing, ACTION_ADD, normalize_pieces(total, existing.pieces_per_box),
                    notes=clean_text(payload.get("description")) or "Stock added",
                    performed_by=performed_by,
                )
                commit_step("merge_product_stock", product_id=existing.id)
                current_app.logger.info("Merged stock into existing product %s", existing.id)
                return existing, True

        ppb = _resolve_pieces_per_box(size, payload.get("pieces_per_box"))
        generated_name = f"{product_type} {sub_type} {size}" if sub_type else f"{product_type} {size}"

        product = Product(
            name=name or generated_name,
            type=product_type,
            sub_type=sub_type,
            size=size,
            pieces_per_box=ppb,
            price_per_box=parse_amount(payload.get("price_per_box"), "price_per_box"),
            cost_per_box=parse_amount(payload.get("cost_per_box"), "cost_per_box", default=None),
            images=_parse_images(payload.get("images")),
            low_stock_threshold=parse_count(payload.get("low_stock_threshold"), "low_stock_threshold"),
            is_active=True,
        )
        for field in PRODUCT_TEXT_FIELDS:
            setattr(product, field, clean_text(payload.get(field)))

        stock = normalize_pieces(quantity_total(initial, ppb), ppb)
        product.set_counter("stock", stock)
        for counter in ("sales", "damage", "returns"):
            product.set_counter(counter, BoxQuantity(0, 0))

        db.session.add(product)
        flush_step("create_product")

        append_history(product, ACTION_ADD, stock, notes="Initial stock", performed_by=performed_by)
        commit_step("create_product_history", product_id=product.id)
        return product, False

    return run_with_retry(_op)


def update_product(product_id: int, payload: dict, *, performed_by: str | None = None) -> Product:
    """
    Patch product fields. Counter overwrites are normalized against the
    (possibly new) pieces_per_box. Any change writes one "Product Update"
    entry whose counters snapshot is what replay resets to.
    """
    payload = dict(payload or {})
    update_notes = clean_text(payload.pop("update_notes", None))

    def _op():
        product = load_product(product_id)
        changes: list[str] = []

        if payload.get("pieces_per_box") not in (None, ""):
            ppb = coerce_int(payload["pieces_per_box"], "pieces_per_box")
            if ppb <= 0:
                raise ValidationError("pieces_per_box must be a positive integer")
            if normalize_size(product.size) in USER_CONFIGURABLE_SIZES:
                get_pieces_per_box(product.size, ppb)
            if ppb != product.pieces_per_box:
                changes.append(f"Tiles per box: {product.pieces_per_box} → {ppb}")
                product.pieces_per_box = ppb

        for counter in COUNTERS:
            if payload.get(counter) is not None:
                requested = parse_quantity(payload[counter], counter)
                product.set_counter(counter, normalize_pieces(quantity_total(requested, product.pieces_per_box),
                                                              product.pieces_per_box))
                changes.append(f"{counter.capitalize()} updated")
            else:
                current = product.get_counter(counter)
                if current.pieces >= product.pieces_per_box:
                    product.set_counter(counter, normalize_pieces(quantity_total(current, product.pieces_per_box),
                                                                  product.pieces_per_box))

        labels = {"name": "Name", "type": "Type", "sub_type": "SubType", "size": "Size"}
        for field, label in labels.items():
            if field in payload:
                value = clean_text(payload[field])
                if field == "size":
                    value = normalize_size(value)
                if field in ("name", "type", "size") and not value:
                    raise ValidationError(f"{field} cannot be blank")
                if value != getattr(product, field):
                    changes.append(f'{label}: "{getattr(product, field)}" → "{value}"')
                    setattr(product, field, value)
        if product.type == FLOOR_TYPE and not product.sub_type:
            raise ValidationError("SubType is required for Floor tiles")

        for field in PRODUCT_TEXT_FIELDS:
            if field in payload:
                value = clean_text(payload[field])
                if value != getattr(product, field):
                    changes.append(f"{field} updated")
                    setattr(product, field, value)

        for field in ("price_per_box", "cost_per_box"):
            if field in payload:
                value = parse_amount(payload[field], field, default=None if field == "cost_per_box" else 0)
                if value != getattr(product, field):
                    changes.append(f"{field} updated")
                    setattr(product, field, value)

        if "images" in payload:
            images = _parse_images(payload["images"])
            if images != list(product.images or []):
                changes.append("images updated")
                product.images = images

        if "low_stock_threshold" in payload:
            threshold = parse_count(payload["low_stock_threshold"], "low_stock_threshold")
            if threshold != product.low_stock_threshold:
                changes.append("low_stock_threshold updated")
                product.low_stock_threshold = threshold

        if changes:
            append_history(
                product, ACTION_PRODUCT_UPDATE, BoxQuantity(0, 0),
                notes=update_notes or "; ".join(changes),
                performed_by=performed_by,
            )
        commit_step("update_product", product_id=product_id)
        return product

    return run_with_retry(_op)


def deactivate_product(product_id: int) -> Product:
    def _op():
        product = load_product(product_id)
        product.is_active = False
        commit_step("deactivate_product", product_id=product_id)
        return product

    return run_with_retry(_op)


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product or not product.is_active:
        raise NotFoundError("Product not found", {"product_id": product_id})
    return product


def _available_pieces_expr():
    ppb = Product.pieces_per_box
    return (
        (Product.stock_boxes * ppb + Product.stock_pieces)
        - (Product.sales_boxes * ppb + Product.sales_pieces)
        - (Product.damage_boxes * ppb + Product.damage_pieces)
        + (Product.returns_boxes * ppb + Product.returns_pieces)
    )


def list_products(
    *,
    q: str | None = None,
    product_type: str | None = None,
    brand: str | None = None,
    size: str | None = None,
    in_stock_only: bool = False,
    low_stock_only: bool = False,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Product], int]:
    query = db.session.query(Product).filter(Product.is_active.is_(True))
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(Product.name.ilike(like), Product.sku.ilike(like)))
    if product_type:
        query = query.filter(Product.type == product_type)
    if brand:
        query = query.filter(Product.brand == brand)
    if size:
        query = query.filter(Product.size == normalize_size(size))
    if in_stock_only:
        query = query.filter(_available_pieces_expr() > 0)
    if low_stock_only:
        # floor(available / ppb) <= threshold  <=>  available < (threshold + 1) * ppb
        query = query.filter(
            Product.low_stock_threshold > 0,
            _available_pieces_expr() < (Product.low_stock_threshold + 1) * Product.pieces_per_box,
        )

    total = query.count()
    products = (
        query.order_by(Product.created_at.desc(), Product.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return products, total


def search_products(q: str = "", *, page: int = 1, limit: int = 20) -> tuple[list[Product], int]:
    query = db.session.query(Product).filter(Product.is_active.is_(True))
    if q and q.strip():
        query = query.filter(Product.name.ilike(f"%{q.strip()}%"))
    total = query.count()
    products = query.order_by(Product.name.asc()).offset((page - 1) * limit).limit(limit).all()
    return products, total


def list_stock_history(
    *,
    product_id: int | None = None,
    action: str | None = None,
    invoice_id: int | None = None,
    start=None,
    end=None,
    page: int = 1,
    limit: int = 30,
) -> tuple[list[StockHistory], int]:
    query = db.session.query(StockHistory)
    if product_id:
        query = query.filter(StockHistory.product_id == product_id)
    if action:
        query = query.filter(StockHistory.action == action)
    if invoice_id:
        query = query.filter(StockHistory.invoice_id == invoice_id)
    if start:
        query = query.filter(StockHistory.created_at >= start)
    if end:
        query = query.filter(StockHistory.created_at <= end)
    total = query.count()
    entries = (
        query.order_by(StockHistory.created_at.desc(), StockHistory.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return entries, total


def get_history_entry(entry_id: int) -> StockHistory:
    entry = db.session.get(StockHistory, entry_id)
    if not entry:
        raise NotFoundError("History entry not found", {"entry_id": entry_id})
    return entry


# =============================================================================
# DAMAGED INVENTORY
# =============================================================================

def list_damaged(
    *,
    product_id: int | None = None,
    damage_type: str | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 30,
) -> tuple[list[DamagedInventory], int]:
    query = db.session.query(DamagedInventory)
    if product_id:
        query = query.filter(DamagedInventory.product_id == product_id)
    if damage_type:
        query = query.filter(DamagedInventory.damage_type == damage_type)
    if status:
        query = query.filter(DamagedInventory.status == status)
    total = query.count()
    records = (
        query.order_by(DamagedInventory.created_at.desc(), DamagedInventory.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return records, total


def update_damaged_status(damaged_id: int, status: str) -> DamagedInventory:
    if status not in DAMAGED_STATUSES:
        raise ValidationError(f"Invalid status: {status}. Must be one of {list(DAMAGED_STATUSES)}")

    def _op():
        record = lock_for_update(db.session.query(DamagedInventory).filter_by(id=damaged_id)).first()
        if not record:
            raise NotFoundError("Damaged record not found", {"damaged_id": damaged_id})
        record.status = status
        commit_step("update_damaged_status", damaged_id=damaged_id)
        return record

    return run_with_retry(_op)


# =============================================================================
# LOW STOCK THRESHOLDS
# =============================================================================

def _parse_threshold(value) -> int:
    if value is None or value == "":
        raise ValidationError("Low stock threshold is required")
    threshold = coerce_int(value, "low_stock_threshold")
    if threshold < 0:
        raise ValidationError("Low stock threshold cannot be negative")
    return threshold


def update_low_stock_threshold(product_id: int, value) -> Product:
    threshold = _parse_threshold(value)

    def _op():
        product = load_product(product_id)
        product.low_stock_threshold = threshold
        commit_step("update_low_stock_threshold", product_id=product_id)
        return product

    return run_with_retry(_op)


def bulk_update_low_stock_threshold(product_ids, value) -> int:
    if not isinstance(product_ids, list) or not product_ids:
        raise ValidationError("Product IDs are required")
    ids = [parse_id(pid, "product_ids") for pid in product_ids]
    threshold = _parse_threshold(value)

    def _op():
        updated = (
            db.session.query(Product)
            .filter(Product.id.in_(ids))
            .update({Product.low_stock_threshold: threshold}, synchronize_session="fetch")
        )
        commit_step("bulk_update_low_stock_threshold", product_count=len(ids))
        return updated

    return run_with_retry(_op)


# =============================================================================
# REPAIR AND VERIFICATION
# =============================================================================

def normalize_product_counters(*, dry_run: bool = False) -> list[dict]:
    """
    Repair rows where a stored counter has pieces >= pieces_per_box.

    Returns one dict per fixed counter. With dry_run nothing is written.
    """
    def _op():
        fixes = []
        for product in db.session.query(Product).order_by(Product.id).all():
            ppb = product.pieces_per_box
            for counter in COUNTERS:
                current = product.get_counter(counter)
                if current.pieces < ppb:
                    continue
                fixed = normalize_pieces(quantity_total(current, ppb), ppb)
                fixes.append({
                    "product_id": product.id,
                    "product_name": product.name,
                    "counter": counter,
                    "before": current.to_dict(),
                    "after": fixed.to_dict(),
                })
                if not dry_run:
                    product.set_counter(counter, fixed)
        if dry_run:
            db.session.rollback()
        else:
            commit_step("normalize_product_counters", fixed=len(fixes))
        return fixes

    return run_with_retry(_op)


def replay_product_history(product_id: int) -> dict:
    """
    Rebuild a product's counters from its ledger and compare with stored values.

    "Product Update" and "Ledger Correction" entries reset all four counters
    to their snapshot;
    every other action applies ACTION_EFFECTS. Unknown actions are reported.
    """
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found", {"product_id": product_id})

    ppb = product.pieces_per_box
    totals = {counter: 0 for counter in COUNTERS}
    unknown_actions = []

    entries = (
        db.session.query(StockHistory)
        .filter(StockHistory.product_id == product_id)
        .order_by(StockHistory.id.asc())
        .all()
    )
    for entry in entries:
        if entry.action in SNAPSHOT_ACTIONS:
            snapshot = entry.counters or {}
            for counter in COUNTERS:
                values = snapshot.get(counter) or {}
                totals[counter] = to_total_pieces(values.get("boxes", 0), values.get("pieces", 0), ppb)
            continue

        effects = ACTION_EFFECTS.get(entry.action)
        if effects is None:
            unknown_actions.append({"entry_id": entry.id, "action": entry.action})
            continue

        for counter, sign, source in effects:
            if source == "replacement":
                amount = to_total_pieces(entry.replacement_boxes or 0, entry.replacement_pieces or 0, ppb)
            else:
                amount = to_total_pieces(entry.change_boxes or 0, entry.change_pieces or 0, ppb)
            totals[counter] = max(0, totals[counter] + sign * amount)

    expected = {counter: normalize_pieces(totals[counter], ppb).to_dict() for counter in COUNTERS}
    actual = {counter: product.get_counter(counter).to_dict() for counter in COUNTERS}
    drift = {
        counter: {"expected": expected[counter], "actual": actual[counter]}
        for counter in COUNTERS
        if expected[counter] != actual[counter]
    }
    return {
        "product_id": product.id,
        "product_name": product.name,
        "entries": len(entries),
        "expected": expected,
        "actual": actual,
        "drift": drift,
        "consistent": not drift and not unknown_actions,
        "unknown_actions": unknown_actions,
    }


def verify_ledger(product_id: int | None = None) -> list[dict]:
    if product_id is not None:
        return [replay_product_history(product_id)]
    ids = [row[0] for row in db.session.query(Product.id).order_by(Product.id).all()]
    return [replay_product_history(pid) for pid in ids]
