# Overview: Flask API routes for payment records and due-date tracking.

from flask import Blueprint, request

from ..errors import TilebooksError
from ..services import payment_service
from .common import bool_arg, date_arg, error_response, int_arg, ok, page_args, pagination, server_error


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.get("")
def list_payments_route():
    """
    Query params: invoice_id, customer_id, payment_method, start_date,
    end_date, search (payment number), page, limit
    """
    try:
        page, limit = page_args()
        payments, total = payment_service.list_payments(
            invoice_id=int_arg("invoice_id"),
            customer_id=int_arg("customer_id"),
            payment_method=request.args.get("payment_method"),
            start_date=date_arg("start_date"),
            end_date=date_arg("end_date"),
            search=request.args.get("search"),
            page=page,
            limit=limit,
        )
        return ok(payments=[p.to_dict() for p in payments], pagination=pagination(page, limit, total))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("list payments")


@payments_bp.get("/pending")
def pending_payments_route():
    """Query params: overdue_only, upcoming_days"""
    try:
        result = payment_service.list_pending_payments(
            overdue_only=bool_arg("overdue_only"),
            upcoming_days=int_arg("upcoming_days"),
        )
        return ok(**result)
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("list pending payments")


@payments_bp.get("/<int:payment_id>")
def get_payment_route(payment_id: int):
    try:
        return ok(payment=payment_service.get_payment(payment_id).to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch payment")


@payments_bp.delete("/<int:payment_id>")
def delete_payment_route(payment_id: int):
    try:
        payment_service.delete_payment(payment_id)
        return ok(message="Payment deleted")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("delete payment")
