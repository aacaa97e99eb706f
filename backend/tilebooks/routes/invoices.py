# Overview: Flask API routes for invoices; lifecycle and payment updates.

# backend/tilebooks/routes/invoices.py
"""
Invoice routes.

POST /api/invoices body (amounts in paise):
{
    "customer_id": 1,
    "invoice_type": "GST" | "NON_GST",
    "sales_channel": "OFFLINE" | "ONLINE",
    "custom_invoice_number": "...",            (optional)
    "items": [
        {"product_id": 3, "quantity": {"boxes": 2, "pieces": 1},
         "price_per_box": 120000, "tax_rate": 18}
    ],
    "discount": 0,
    "final_amount": 283200,                     (optional; derived if omitted)
    "payment": {"total_paid": 0, "next_due_date": "2024-07-01"}
}

PUT /api/invoices/<id>/payment body:
{"payment_amount": 50000, "payment_method": "UPI", "discount": 0, "next_due_date": "..."}
"""

from flask import Blueprint, request

from ..errors import TilebooksError
from ..services import invoice_service
from .common import date_arg, error_response, int_arg, json_body, ok, page_args, pagination, server_error


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


@invoices_bp.get("")
def list_invoices_route():
    """
    Query params: search, invoice_type, payment_status (comma list),
    sales_channel, customer_id, start_date, end_date, sort_by, order, page, limit
    """
    try:
        page, limit = page_args()
        statuses = [s.strip().upper() for s in request.args.get("payment_status", "").split(",") if s.strip()]
        invoices, total = invoice_service.list_invoices(
            search=request.args.get("search"),
            invoice_type=request.args.get("invoice_type"),
            payment_statuses=statuses or None,
            sales_channel=request.args.get("sales_channel"),
            customer_id=int_arg("customer_id"),
            start_date=date_arg("start_date"),
            end_date=date_arg("end_date"),
            sort_by=request.args.get("sort_by", "created_at"),
            order=request.args.get("order", "desc"),
            page=page,
            limit=limit,
        )
        return ok(
            invoices=[i.to_dict(include_lines=False) for i in invoices],
            pagination=pagination(page, limit, total),
        )
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("list invoices")


@invoices_bp.post("")
def create_invoice_route():
    try:
        invoice = invoice_service.create_invoice(json_body())
        return ok(201, invoice=invoice.to_dict(), message="Invoice created")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("create invoice")


@invoices_bp.get("/<int:invoice_id>")
def get_invoice_route(invoice_id: int):
    try:
        return ok(invoice=invoice_service.get_invoice(invoice_id).to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch invoice")


@invoices_bp.get("/number/<string:invoice_number>")
def get_invoice_by_number_route(invoice_number: str):
    try:
        return ok(invoice=invoice_service.get_invoice_by_number(invoice_number).to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch invoice")


@invoices_bp.put("/<int:invoice_id>")
def update_invoice_route(invoice_id: int):
    try:
        invoice = invoice_service.update_invoice(invoice_id, json_body())
        return ok(invoice=invoice.to_dict(), message="Invoice updated")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("update invoice")


@invoices_bp.delete("/<int:invoice_id>")
def delete_invoice_route(invoice_id: int):
    try:
        invoice_service.delete_invoice(invoice_id)
        return ok(message="Invoice deleted")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("delete invoice")


@invoices_bp.put("/<int:invoice_id>/payment")
def update_invoice_payment_route(invoice_id: int):
    try:
        invoice, payment = invoice_service.update_invoice_payment(invoice_id, json_body())
        return ok(
            invoice=invoice.to_dict(),
            payment=payment.to_dict() if payment else None,
            message="Payment updated",
        )
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("update invoice payment")
