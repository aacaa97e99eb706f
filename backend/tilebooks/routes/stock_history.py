# Overview: Flask API routes for reading the stock ledger.

from flask import Blueprint, request

from ..errors import TilebooksError
from ..services import stock_ledger_service
from .common import date_arg, error_response, int_arg, ok, page_args, pagination, server_error


stock_history_bp = Blueprint("stock_history", __name__, url_prefix="/api/stock-history")


@stock_history_bp.get("")
def list_history_route():
    """
    Query params: product_id, action, invoice_id, start_date, end_date, page, limit
    """
    try:
        page, limit = page_args(30)
        entries, total = stock_ledger_service.list_stock_history(
            product_id=int_arg("product_id"),
            action=request.args.get("action"),
            invoice_id=int_arg("invoice_id"),
            start=date_arg("start_date"),
            end=date_arg("end_date"),
            page=page,
            limit=limit,
        )
        return ok(history=[e.to_dict() for e in entries], pagination=pagination(page, limit, total))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("list stock history")


@stock_history_bp.get("/<int:entry_id>")
def get_history_entry_route(entry_id: int):
    try:
        entry = stock_ledger_service.get_history_entry(entry_id)
        return ok(entry=entry.to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch stock history entry")
