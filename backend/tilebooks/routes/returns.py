# Overview: Flask API routes for customer returns and store credit.

# backend/tilebooks/routes/returns.py
"""
Return routes.

POST /api/returns body:
{
    "invoice_id": 12,
    "items": [
        {"product_id": 3, "quantity": {"boxes": 0, "pieces": 2},
         "return_reason": "DAMAGED", "condition": "DAMAGED"}
    ],
    "return_type": "CREDIT" | "REFUND" | "EXCHANGE",
    "refund_method": "CASH",
    "notes": "..."
}

POST /api/returns/use-credit body:
{"customer_id": 1, "invoice_id": 14, "amount": 30000}
"""

from flask import Blueprint, request

from ..errors import TilebooksError
from ..services import return_service
from ..validation import parse_id
from .common import date_arg, error_response, int_arg, json_body, ok, page_args, pagination, server_error


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.get("")
def list_returns_route():
    try:
        page, limit = page_args()
        records, total = return_service.list_returns(
            invoice_id=int_arg("invoice_id"),
            customer_id=int_arg("customer_id"),
            return_type=request.args.get("return_type"),
            start_date=date_arg("start_date"),
            end_date=date_arg("end_date"),
            page=page,
            limit=limit,
        )
        return ok(returns=[r.to_dict() for r in records], pagination=pagination(page, limit, total))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("list returns")


@returns_bp.post("")
def create_return_route():
    try:
        data = json_body()
        record = return_service.create_return(
            parse_id(data.get("invoice_id"), "invoice_id"),
            data.get("items"),
            return_type=data.get("return_type"),
            refund_method=data.get("refund_method"),
            notes=data.get("notes"),
            processed_by=data.get("processed_by"),
        )
        return ok(201, data=record.to_dict(), message="Return processed successfully")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("create return")


@returns_bp.get("/<int:return_id>")
def get_return_route(return_id: int):
    try:
        return ok(data=return_service.get_return(return_id).to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch return")


@returns_bp.get("/credit/<int:customer_id>")
def customer_credit_route(customer_id: int):
    try:
        return ok(data=return_service.get_customer_credit(customer_id))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch customer credit")


@returns_bp.post("/use-credit")
def use_credit_route():
    try:
        data = json_body()
        result = return_service.use_credit(
            parse_id(data.get("customer_id"), "customer_id"),
            parse_id(data.get("invoice_id"), "invoice_id"),
            data.get("amount"),
        )
        return ok(data=result, message="Credit applied successfully")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("use credit")
