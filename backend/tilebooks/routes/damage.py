# Overview: Flask API routes for damage recording and the damaged-inventory register.

# backend/tilebooks/routes/damage.py
"""
Damage routes.

POST /api/damage body:
{
    "product_id": 1,
    "damage_type": "own" | "customer-refund" | "exchange-same" | "exchange-different",
    "damaged_quantity": {"boxes": 0, "pieces": 2},
    "replacement_quantity": {"boxes": 0, "pieces": 2},   (exchanges)
    "replacement_product_id": 7,                          (exchange-different)
    "customer_name": "...",
    "damage_reason": "...",
    "description": "...",
    "performed_by": "..."
}
"""

from flask import Blueprint, request

from ..errors import TilebooksError
from ..services import stock_ledger_service
from ..validation import clean_text, parse_id, parse_quantity
from .common import error_response, int_arg, json_body, ok, page_args, pagination, server_error


damage_bp = Blueprint("damage", __name__, url_prefix="/api/damage")


@damage_bp.post("")
def record_damage_route():
    try:
        data = json_body()
        replacement_product_id = data.get("replacement_product_id")
        replacement = data.get("replacement_quantity")
        entries = stock_ledger_service.record_damage(
            parse_id(data.get("product_id"), "product_id"),
            clean_text(data.get("damage_type")),
            parse_quantity(data.get("damaged_quantity"), "damaged_quantity"),
            replacement=parse_quantity(replacement, "replacement_quantity") if replacement is not None else None,
            replacement_product_id=(
                parse_id(replacement_product_id, "replacement_product_id")
                if replacement_product_id not in (None, "") else None
            ),
            customer_name=clean_text(data.get("customer_name")),
            damage_reason=clean_text(data.get("damage_reason")),
            description=clean_text(data.get("description")),
            performed_by=clean_text(data.get("performed_by")),
        )
        return ok(201, entries=[e.to_dict() for e in entries], message="Damage recorded")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("record damage")


@damage_bp.get("/inventory")
def list_damaged_route():
    """Query params: product_id, damage_type (shop|customer), status, page, limit"""
    try:
        page, limit = page_args(30)
        records, total = stock_ledger_service.list_damaged(
            product_id=int_arg("product_id"),
            damage_type=request.args.get("damage_type"),
            status=request.args.get("status"),
            page=page,
            limit=limit,
        )
        return ok(damaged=[r.to_dict() for r in records], pagination=pagination(page, limit, total))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("list damaged inventory")


@damage_bp.put("/inventory/<int:damaged_id>/status")
def update_damaged_status_route(damaged_id: int):
    try:
        data = json_body()
        record = stock_ledger_service.update_damaged_status(damaged_id, clean_text(data.get("status")))
        return ok(damaged=record.to_dict(), message="Status updated")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("update damaged status")
