# Overview: Service-layer operations for invoices; lifecycle, totals, payment sub-state and stock ripple effects.

"""
Invoice Lifecycle

CREATE:
- customer + non-empty items required
- lines with a resolvable catalog product drive the ledger (sales += qty,
  one SALE entry each); custom/unknown products are skipped with a warning
- over-selling is logged, never blocked
- the request "discount" is a bill discount (bill_discount): it lowers
  total_amount and so final_amount
- customer aggregates: purchase += final, paid += paid, outstanding += pending,
  invoices += 1

EDIT:
- reverse old line sales (floored), drop the invoice's SALE entries,
  apply the new lines and write fresh SALE entries
- a clamped reversal is recorded as a ledger correction so replay still
  reproduces the counters
- the bill discount defaults to the stored one; the settlement discount is
  never fed back into the totals
- pending = max(0, final - total_paid - discount); customer aggregates are
  NOT adjusted (logged when final_amount changes; reconcile with
  customer_service.recalculate_customer_aggregates)

DELETE:
- drop SALE entries, reverse sales, record any ledger correction, reverse
  customer aggregates, delete payments, delete the invoice. Invoices with
  returns cannot be deleted.

PAYMENT UPDATE:
- the settlement discount accumulates into invoice.discount; final_amount
  never changes
- payment_amount > 0 creates a Payment row and a payment_history entry

All amounts are integer paise.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import or_

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Customer, Invoice, InvoiceLine, Payment, Product, StockHistory
from ..units import BoxQuantity, calculate_available, quantity_total
from ..validation import (
    clean_text,
    parse_amount,
    parse_choice,
    parse_count,
    parse_id,
    parse_optional_datetime,
    parse_quantity,
    parse_signed_amount,
)
from tilebooks.time_utils import to_utc_z, utcnow
from . import customer_service, numbering_service
from .concurrency import commit_step, flush_step, lock_for_update, run_numbered_with_retry, run_with_retry
from .stock_ledger_service import (
    ACTION_SALE,
    record_invoice_sale,
    record_ledger_correction,
    replay_product_history,
    reverse_invoice_sale,
)


# =============================================================================
# CONSTANTS
# =============================================================================

INVOICE_TYPE_GST = "GST"
INVOICE_TYPE_NON_GST = "NON_GST"
INVOICE_TYPES = [INVOICE_TYPE_GST, INVOICE_TYPE_NON_GST]

SALES_CHANNELS = ["OFFLINE", "ONLINE"]

PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_PARTIAL = "PARTIAL"
PAYMENT_STATUS_PAID = "PAID"
OPEN_PAYMENT_STATUSES = [PAYMENT_STATUS_PENDING, PAYMENT_STATUS_PARTIAL]

PAYMENT_METHODS = ["CASH", "UPI", "BANK_TRANSFER", "CARD", "CHEQUE"]

INVOICE_STATUSES = ["ACTIVE", "COMPLETED", "RETURNED", "CANCELLED"]

SORTABLE_FIELDS = {
    "created_at": Invoice.created_at,
    "invoice_date": Invoice.invoice_date,
    "invoice_number": Invoice.invoice_number,
    "final_amount": Invoice.final_amount,
    "pending_amount": Invoice.pending_amount,
}


# =============================================================================
# PURE HELPERS
# =============================================================================

def derive_payment_status(total_paid: int, final_amount: int, discount: int = 0) -> str:
    """
    The one payment-status rule:
    PAID when total_paid >= final_amount - discount, PARTIAL when anything
    was paid, else PENDING.
    """
    if total_paid >= final_amount - (discount or 0):
        return PAYMENT_STATUS_PAID
    if total_paid > 0:
        return PAYMENT_STATUS_PARTIAL
    return PAYMENT_STATUS_PENDING


def round_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounding halves away from zero (numerator >= 0)."""
    if denominator <= 0:
        raise ValidationError("denominator must be positive")
    return (2 * numerator + denominator) // (2 * denominator)


def apply_payment_state(invoice: Invoice) -> None:
    """Re-derive status from the invoice's current money fields."""
    invoice.payment_status = derive_payment_status(invoice.total_paid, invoice.final_amount, invoice.discount)
    if invoice.payment_status == PAYMENT_STATUS_PAID:
        invoice.next_due_date = None


# =============================================================================
# LINE + TOTALS PARSING
# =============================================================================

def _parse_line(raw: dict, position: int, invoice_type: str) -> tuple[InvoiceLine, Product | None]:
    if not isinstance(raw, dict):
        raise ValidationError(f"items[{position}] must be an object")

    is_custom = bool(raw.get("is_custom"))
    product = None
    product_id = raw.get("product_id")
    if product_id not in (None, "") and not is_custom:
        product_id = parse_id(product_id, f"items[{position}].product_id")
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if not product:
            current_app.logger.warning(
                "Product %s on invoice line %s not found; skipping stock update", product_id, position
            )
    else:
        product_id = None

    name = clean_text(raw.get("product_name")) or (product.name if product else None)
    if not name:
        raise ValidationError(f"items[{position}].product_name is required")

    ppb = raw.get("pieces_per_box")
    if ppb in (None, ""):
        ppb = product.pieces_per_box if product else None
    if ppb is None:
        raise ValidationError(f"items[{position}].pieces_per_box is required for custom products")
    ppb = parse_count(ppb, f"items[{position}].pieces_per_box")
    if ppb <= 0:
        raise ValidationError(f"items[{position}].pieces_per_box must be a positive integer")

    quantity = parse_quantity(raw.get("quantity"), f"items[{position}].quantity")
    if quantity_total(quantity, ppb) <= 0:
        raise ValidationError(f"items[{position}] must have a quantity of at least 1 piece")

    price_per_box = parse_amount(
        raw.get("price_per_box"), f"items[{position}].price_per_box",
        default=product.price_per_box if product else 0,
    )
    price_per_piece = parse_amount(
        raw.get("price_per_piece"), f"items[{position}].price_per_piece",
        default=round_half_up(price_per_box, ppb),
    )
    item_total = parse_amount(
        raw.get("item_total"), f"items[{position}].item_total",
        default=quantity.boxes * price_per_box + quantity.pieces * price_per_piece,
    )
    tax_rate = parse_count(raw.get("tax_rate"), f"items[{position}].tax_rate")
    tax_default = round_half_up(item_total * tax_rate, 100) if invoice_type == INVOICE_TYPE_GST else 0
    tax_amount = parse_amount(raw.get("tax_amount"), f"items[{position}].tax_amount", default=tax_default)

    line = InvoiceLine(
        position=position,
        product_id=product.id if product else product_id,
        is_custom=is_custom or product is None,
        product_name=name,
        product_type=clean_text(raw.get("product_type")) or (product.type if product else None),
        product_size=clean_text(raw.get("product_size")) or (product.size if product else None),
        hsn_no=clean_text(raw.get("hsn_no")) or (product.hsn_no if product else None),
        boxes=quantity.boxes,
        pieces=quantity.pieces,
        pieces_per_box=ppb,
        price_per_box=price_per_box,
        price_per_piece=price_per_piece,
        item_total=item_total,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
    )
    return line, product


def _parse_lines(items, invoice_type: str) -> list[tuple[InvoiceLine, Product | None]]:
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    parsed = [_parse_line(raw, i, invoice_type) for i, raw in enumerate(items)]

    for line, product in parsed:
        if product is None:
            continue
        requested = quantity_total(BoxQuantity(line.boxes, line.pieces), product.pieces_per_box)
        available = calculate_available(product).total_pieces
        if requested > available:
            current_app.logger.warning(
                "Insufficient stock for %s. Requested: %s pc, Available: %s pc",
                product.name, requested, available,
            )
    return parsed


def compute_totals(payload: dict, invoice_type: str, lines: list[InvoiceLine], *, discount: int) -> dict:
    """
    Caller-supplied totals win; anything omitted is derived from the lines.
    total_before_discount and invoice_value are always derived.
    """
    subtotal = parse_amount(payload.get("subtotal"), "subtotal", default=sum(l.item_total for l in lines))
    line_tax = sum(l.tax_amount for l in lines) if invoice_type == INVOICE_TYPE_GST else 0
    total_tax = parse_amount(payload.get("total_tax"), "total_tax", default=line_tax)

    half = total_tax // 2
    cgst = parse_amount(payload.get("cgst"), "cgst", default=half)
    sgst = parse_amount(payload.get("sgst"), "sgst", default=total_tax - half)
    igst = parse_amount(payload.get("igst"), "igst", default=0)

    total_before_discount = subtotal + total_tax
    invoice_value = total_before_discount if invoice_type == INVOICE_TYPE_GST else subtotal

    total_amount = parse_amount(
        payload.get("total_amount"), "total_amount", default=max(0, total_before_discount - discount)
    )

    if payload.get("final_amount") not in (None, ""):
        final_amount = parse_amount(payload.get("final_amount"), "final_amount")
        round_off = parse_signed_amount(payload.get("round_off_amount"), "round_off_amount",
                                        default=final_amount - total_amount)
    else:
        # Round to the nearest rupee
        rounded = round_half_up(total_amount, 100) * 100
        round_off = parse_signed_amount(payload.get("round_off_amount"), "round_off_amount",
                                        default=rounded - total_amount)
        final_amount = total_amount + round_off
        if final_amount < 0:
            raise ValidationError("final_amount cannot be negative")

    return {
        "subtotal": subtotal,
        "cgst": cgst,
        "sgst": sgst,
        "igst": igst,
        "total_tax": total_tax,
        "total_before_discount": total_before_discount,
        "invoice_value": invoice_value,
        "total_amount": total_amount,
        "round_off_amount": round_off,
        "final_amount": final_amount,
    }


def load_invoice(invoice_id: int, *, lock: bool = True) -> Invoice:
    query = db.session.query(Invoice).filter_by(id=invoice_id)
    if lock:
        query = lock_for_update(query)
    invoice = query.first()
    if not invoice:
        raise NotFoundError("Invoice not found", {"invoice_id": invoice_id})
    return invoice


def _line_products(invoice: Invoice) -> list[tuple[InvoiceLine, Product]]:
    pairs = []
    for line in invoice.lines:
        if not line.product_id:
            continue
        product = lock_for_update(db.session.query(Product).filter_by(id=line.product_id)).first()
        if product:
            pairs.append((line, product))
    return pairs


def _delete_sale_entries(invoice_id: int) -> int:
    return (
        db.session.query(StockHistory)
        .filter(StockHistory.invoice_id == invoice_id, StockHistory.action == ACTION_SALE)
        .delete(synchronize_session=False)
    )


def _reverse_invoice_stock(invoice: Invoice, reason: str) -> None:
    """
    Reverse the invoice's line sales and drop its SALE entries. Products whose
    ledger agreed beforehand get a correction entry if it no longer does.
    """
    pairs = _line_products(invoice)
    products = {product.id: product for _, product in pairs}
    consistent = {pid: replay_product_history(pid)["consistent"] for pid in products}

    for line, product in pairs:
        reverse_invoice_sale(product, BoxQuantity(line.boxes, line.pieces))
    _delete_sale_entries(invoice.id)

    for pid, product in products.items():
        if consistent[pid]:
            record_ledger_correction(
                product,
                notes=f"{reason} - Invoice: {invoice.invoice_number}",
            )
        else:
            current_app.logger.warning(
                "Product %s ledger already inconsistent; no correction written for invoice %s",
                pid, invoice.invoice_number,
            )


# =============================================================================
# CREATE
# =============================================================================

def create_invoice(payload: dict) -> Invoice:
    payload = payload or {}
    items = payload.get("items")
    if not payload.get("customer_id") or not items:
        raise ValidationError("Customer and items are required")

    customer_id = parse_id(payload.get("customer_id"), "customer_id")
    invoice_type = parse_choice(payload.get("invoice_type"), "invoice_type", INVOICE_TYPES, default=INVOICE_TYPE_NON_GST)
    sales_channel = parse_choice(payload.get("sales_channel"), "sales_channel", SALES_CHANNELS, default="OFFLINE")
    invoice_date = parse_optional_datetime(payload.get("invoice_date"), "invoice_date")
    bill_discount = parse_amount(payload.get("discount"), "discount")
    custom_number = clean_text(payload.get("custom_invoice_number"))
    details = payload.get("customer_details") or {}
    if not isinstance(details, dict):
        raise ValidationError("customer_details must be an object")
    payment = payload.get("payment") or {}
    if not isinstance(payment, dict):
        raise ValidationError("payment must be an object")
    total_paid = parse_amount(payment.get("total_paid"), "payment.total_paid")
    next_due_date = parse_optional_datetime(payment.get("next_due_date"), "payment.next_due_date")

    def _op():
        customer = customer_service.load_customer(customer_id)
        parsed = _parse_lines(items, invoice_type)
        lines = [line for line, _ in parsed]
        totals = compute_totals(payload, invoice_type, lines, discount=bill_discount)

        if custom_number:
            if db.session.query(Invoice.id).filter_by(invoice_number=custom_number).first():
                raise ValidationError(f"Invoice number {custom_number} already exists")
            invoice_number = custom_number
        else:
            invoice_number = numbering_service.next_invoice_number(invoice_type)

        final_amount = totals["final_amount"]
        pending_amount = final_amount - total_paid

        invoice = Invoice(
            invoice_number=invoice_number,
            invoice_type=invoice_type,
            invoice_date=invoice_date or utcnow(),
            sales_channel=sales_channel,
            customer_id=customer.id,
            customer_name=clean_text(details.get("name")) or customer.name,
            customer_phone=clean_text(details.get("phone")) or customer.phone,
            customer_address=clean_text(details.get("address")) or customer.address,
            customer_gst_number=clean_text(details.get("gst_number")) or customer.gst_number,
            bill_discount=bill_discount,
            discount=0,
            total_paid=total_paid,
            pending_amount=pending_amount,
            next_due_date=next_due_date,
            payment_history=[],
            returns_history=[],
            notes=clean_text(payload.get("notes")),
            **totals,
        )
        invoice.lines = lines
        apply_payment_state(invoice)
        db.session.add(invoice)
        flush_step("create_invoice", customer_id=customer.id)

        for line, product in parsed:
            if product is None:
                continue
            record_invoice_sale(product, BoxQuantity(line.boxes, line.pieces), invoice=invoice, customer_id=customer.id)
        flush_step("invoice_sale_ledger", invoice_id=invoice.id)

        customer_service.apply_financial_delta(
            customer,
            purchase=final_amount,
            paid=total_paid,
            outstanding=pending_amount,
            invoices=1,
            last_purchase_date=utcnow(),
        )
        commit_step("invoice_customer_aggregates", invoice_id=invoice.id, customer_id=customer.id)

        current_app.logger.info(
            "Created invoice %s for customer %s (final=%s, paid=%s)",
            invoice.invoice_number, customer.id, final_amount, total_paid,
        )
        return invoice

    return run_numbered_with_retry(_op)


# =============================================================================
# EDIT
# =============================================================================

def update_invoice(invoice_id: int, payload: dict) -> Invoice:
    payload = payload or {}
    items = payload.get("items")
    if not items:
        raise ValidationError("Items are required")
    if payload.get("customer_id") not in (None, ""):
        requested_customer = parse_id(payload.get("customer_id"), "customer_id")
    else:
        requested_customer = None

    def _op():
        invoice = load_invoice(invoice_id)
        if requested_customer is not None and requested_customer != invoice.customer_id:
            raise ValidationError("Invoice customer cannot be changed; delete and re-create the invoice")

        invoice_type = parse_choice(payload.get("invoice_type"), "invoice_type", INVOICE_TYPES,
                                    default=invoice.invoice_type)
        bill_discount = parse_amount(payload.get("discount"), "discount", default=invoice.bill_discount)

        # 1. Reverse the original lines' sales and drop their SALE entries
        _reverse_invoice_stock(invoice, "Invoice edit")
        flush_step("invoice_edit_reversal", invoice_id=invoice.id)

        # 2. Apply the new lines
        parsed = _parse_lines(items, invoice_type)
        invoice.lines = [line for line, _ in parsed]
        for line, product in parsed:
            if product is None:
                continue
            record_invoice_sale(
                product, BoxQuantity(line.boxes, line.pieces),
                invoice=invoice, customer_id=invoice.customer_id, edited=True,
            )

        totals = compute_totals(payload, invoice_type, invoice.lines, discount=bill_discount)
        old_final = invoice.final_amount

        invoice.invoice_type = invoice_type
        invoice.bill_discount = bill_discount
        for key, value in totals.items():
            setattr(invoice, key, value)
        if "invoice_date" in payload:
            invoice.invoice_date = parse_optional_datetime(payload.get("invoice_date"), "invoice_date") or utcnow()
        if "sales_channel" in payload:
            invoice.sales_channel = parse_choice(payload.get("sales_channel"), "sales_channel", SALES_CHANNELS,
                                                 default=invoice.sales_channel)
        if "notes" in payload:
            invoice.notes = clean_text(payload.get("notes"))

        invoice.pending_amount = max(0, invoice.final_amount - invoice.total_paid - invoice.discount)
        apply_payment_state(invoice)

        if old_final != invoice.final_amount:
            current_app.logger.warning(
                "Invoice %s final amount changed %s -> %s; customer %s aggregates not adjusted",
                invoice.invoice_number, old_final, invoice.final_amount, invoice.customer_id,
            )

        commit_step("update_invoice", invoice_id=invoice.id)
        return invoice

    return run_with_retry(_op)


# =============================================================================
# DELETE
# =============================================================================

def delete_invoice(invoice_id: int) -> None:
    def _op():
        invoice = load_invoice(invoice_id)
        if invoice.returns:
            raise ValidationError("Cannot delete invoice with returns")

        _reverse_invoice_stock(invoice, "Invoice deleted")
        flush_step("invoice_delete_stock_reversal", invoice_id=invoice.id)

        customer = db.session.get(Customer, invoice.customer_id) if invoice.customer_id else None
        if customer is not None:
            customer_service.apply_financial_delta(
                customer,
                purchase=-invoice.final_amount,
                paid=-invoice.total_paid,
                outstanding=-invoice.pending_amount,
                invoices=-1,
            )
        else:
            current_app.logger.warning("Invoice %s has no customer row; aggregates not reversed", invoice.id)

        for payment in list(invoice.payments):
            db.session.delete(payment)
        number = invoice.invoice_number
        db.session.delete(invoice)
        commit_step("delete_invoice", invoice_id=invoice_id, customer_id=invoice.customer_id)
        current_app.logger.info("Deleted invoice %s", number)

    return run_with_retry(_op)


# =============================================================================
# PAYMENT UPDATE
# =============================================================================

def update_invoice_payment(invoice_id: int, payload: dict) -> tuple[Invoice, Payment | None]:
    """
    Record a payment and/or a discount and/or a due-date change.

    Returns (invoice, payment); payment is None unless payment_amount > 0.
    """
    payload = payload or {}
    amount = parse_amount(payload.get("payment_amount"), "payment_amount")
    discount = parse_amount(payload.get("discount"), "discount")
    method = parse_choice(payload.get("payment_method"), "payment_method", PAYMENT_METHODS, default="CASH")
    payment_date = parse_optional_datetime(payload.get("payment_date"), "payment_date")
    next_due_date = parse_optional_datetime(payload.get("next_due_date"), "next_due_date")
    transaction_id = clean_text(payload.get("transaction_id"))
    notes = clean_text(payload.get("notes"))

    if amount == 0 and discount == 0 and next_due_date is None:
        raise ValidationError("Provide payment_amount, discount or next_due_date")

    def _op():
        invoice = load_invoice(invoice_id)
        customer = customer_service.load_customer(invoice.customer_id)

        if discount > 0:
            invoice.discount = (invoice.discount or 0) + discount

        remaining_before = invoice.final_amount - invoice.total_paid - invoice.discount
        payment = None

        if amount > 0:
            paid_at = payment_date or utcnow()
            payment = Payment(
                payment_number=numbering_service.next_payment_number(),
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                customer_id=invoice.customer_id,
                customer_name=invoice.customer_name,
                amount=amount,
                payment_method=method,
                payment_date=paid_at,
                transaction_id=transaction_id,
                next_due_date=next_due_date,
                notes=notes or f"Payment for invoice {invoice.invoice_number}",
                remaining_amount=remaining_before - amount,
            )
            db.session.add(payment)
            flush_step("create_payment", invoice_id=invoice.id)

            invoice.total_paid += amount
            invoice.pending_amount = invoice.final_amount - invoice.total_paid - invoice.discount
            if next_due_date is not None:
                invoice.next_due_date = next_due_date
            apply_payment_state(invoice)

            invoice.payment_history = list(invoice.payment_history or []) + [{
                "payment_id": payment.id,
                "payment_number": payment.payment_number,
                "amount": amount,
                "payment_method": method,
                "payment_date": to_utc_z(paid_at),
            }]

            customer_service.apply_financial_delta(customer, paid=amount, outstanding=-(amount + discount))
        else:
            if next_due_date is not None:
                invoice.next_due_date = next_due_date
            if discount > 0:
                customer_service.apply_financial_delta(customer, outstanding=-discount)
                invoice.pending_amount = invoice.final_amount - invoice.total_paid - invoice.discount
                apply_payment_state(invoice)

        commit_step(
            "update_invoice_payment",
            invoice_id=invoice.id,
            customer_id=customer.id,
            payment_id=payment.id if payment else None,
        )
        return invoice, payment

    return run_numbered_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice not found", {"invoice_id": invoice_id})
    return invoice


def get_invoice_by_number(invoice_number: str) -> Invoice:
    invoice = db.session.query(Invoice).filter_by(invoice_number=invoice_number).first()
    if not invoice:
        raise NotFoundError("Invoice not found", {"invoice_number": invoice_number})
    return invoice


def list_invoices(
    *,
    search: str | None = None,
    invoice_type: str | None = None,
    payment_statuses: list[str] | None = None,
    sales_channel: str | None = None,
    customer_id: int | None = None,
    start_date=None,
    end_date=None,
    sort_by: str = "created_at",
    order: str = "desc",
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Invoice], int]:
    query = db.session.query(Invoice)
    if customer_id:
        query = query.filter(Invoice.customer_id == customer_id)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(or_(
            Invoice.invoice_number.ilike(like),
            Invoice.customer_name.ilike(like),
            Invoice.customer_phone.ilike(like),
        ))
    if invoice_type:
        query = query.filter(Invoice.invoice_type == invoice_type)
    if payment_statuses:
        query = query.filter(Invoice.payment_status.in_(payment_statuses))
    if sales_channel:
        query = query.filter(Invoice.sales_channel == sales_channel)
    if start_date:
        query = query.filter(Invoice.created_at >= start_date)
    if end_date:
        query = query.filter(Invoice.created_at <= end_date)

    column = SORTABLE_FIELDS.get(sort_by)
    if column is None:
        raise ValidationError(f"Cannot sort invoices by {sort_by}")
    ordering = column.desc() if order == "desc" else column.asc()

    total = query.count()
    invoices = query.order_by(ordering, Invoice.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return invoices, total


# =============================================================================
# MAINTENANCE
# =============================================================================

def backfill_invoice_totals() -> int:
    """Recompute total_before_discount / invoice_value on every invoice. Returns rows changed."""
    def _op():
        changed = 0
        for invoice in db.session.query(Invoice).order_by(Invoice.id).all():
            total_before_discount = (invoice.subtotal or 0) + (invoice.total_tax or 0)
            invoice_value = total_before_discount if invoice.invoice_type == INVOICE_TYPE_GST else (invoice.subtotal or 0)
            if invoice.total_before_discount != total_before_discount or invoice.invoice_value != invoice_value:
                invoice.total_before_discount = total_before_discount
                invoice.invoice_value = invoice_value
                changed += 1
        commit_step("backfill_invoice_totals", changed=changed)
        return changed

    return run_with_retry(_op)
