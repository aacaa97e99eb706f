# Overview: Flask API routes for customers; profile CRUD, statistics, credit and payment history.

from flask import Blueprint, request

from ..errors import TilebooksError
from ..services import customer_service, payment_service, return_service
from .common import bool_arg, error_response, json_body, ok, page_args, pagination, server_error


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("")
def list_customers_route():
    """
    Query params: search, has_outstanding, active_only, sort_by, order, page, limit
    """
    try:
        page, limit = page_args()
        customers, total = customer_service.list_customers(
            search=request.args.get("search"),
            has_outstanding=bool_arg("has_outstanding"),
            active_only=bool_arg("active_only"),
            sort_by=request.args.get("sort_by", "name"),
            order=request.args.get("order", "asc"),
            page=page,
            limit=limit,
        )
        return ok(customers=[c.to_dict() for c in customers], pagination=pagination(page, limit, total))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("list customers")


@customers_bp.post("")
def create_customer_route():
    try:
        customer = customer_service.create_customer(json_body())
        return ok(201, customer=customer.to_dict(), message="Customer created")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("create customer")


@customers_bp.get("/<int:customer_id>")
def get_customer_route(customer_id: int):
    try:
        customer = customer_service.get_customer(customer_id)
        return ok(customer=customer.to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch customer")


@customers_bp.put("/<int:customer_id>")
def update_customer_route(customer_id: int):
    try:
        customer = customer_service.update_customer(customer_id, json_body())
        return ok(customer=customer.to_dict(), message="Customer updated")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("update customer")


@customers_bp.delete("/<int:customer_id>")
def delete_customer_route(customer_id: int):
    try:
        customer_service.delete_customer(customer_id)
        return ok(message="Customer deleted")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("delete customer")


@customers_bp.get("/<int:customer_id>/stats")
def customer_stats_route(customer_id: int):
    try:
        return ok(stats=customer_service.get_customer_stats(customer_id))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch customer stats")


@customers_bp.get("/<int:customer_id>/credit")
def customer_credit_route(customer_id: int):
    try:
        return ok(credit=return_service.get_customer_credit(customer_id))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch customer credit")


@customers_bp.get("/<int:customer_id>/payments")
def customer_payments_route(customer_id: int):
    try:
        return ok(**payment_service.get_customer_payment_history(customer_id))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch customer payment history")


@customers_bp.post("/<int:customer_id>/recalculate")
def recalculate_customer_route(customer_id: int):
    """Rebuild the customer's aggregates from their invoices."""
    try:
        results = customer_service.recalculate_customer_aggregates(customer_id)
        return ok(result=results[0], customer=customer_service.get_customer(customer_id).to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("recalculate customer aggregates")
