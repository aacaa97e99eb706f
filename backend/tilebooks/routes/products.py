# Overview: Flask API routes for products and the stock mutation scenarios; parses input and returns JSON responses.

# backend/tilebooks/routes/products.py
"""
Product and stock routes.

All quantities are {"boxes": int, "pieces": int}; loose pieces beyond a
full box are normalized by the ledger against the product's pieces_per_box.

Scenario endpoints (one StockHistory entry each):
- POST /api/products/<id>/add-stock   stock += quantity
- POST /api/products/<id>/sell        sales += quantity (availability checked)
- POST /api/products/<id>/return      sales -= quantity, returns += quantity
- POST /api/products/<id>/damage      damage += quantity (availability checked)
- POST /api/products/<id>/exchange    damaged back, same product out
"""

from flask import Blueprint, current_app, request

from ..errors import TilebooksError
from ..services import stock_ledger_service
from ..validation import clean_text, parse_quantity
from .common import bool_arg, error_response, json_body, ok, page_args, pagination, server_error


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


# =============================================================================
# CATALOG
# =============================================================================

@products_bp.get("")
def list_products_route():
    """
    Query params: q, type, brand, size, in_stock, low_stock, page, limit
    """
    try:
        page, limit = page_args(20)
        products, total = stock_ledger_service.list_products(
            q=request.args.get("q"),
            product_type=request.args.get("type"),
            brand=request.args.get("brand"),
            size=request.args.get("size"),
            in_stock_only=bool_arg("in_stock"),
            low_stock_only=bool_arg("low_stock"),
            page=page,
            limit=limit,
        )
        return ok(products=[p.to_dict() for p in products], pagination=pagination(page, limit, total))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("list products")


@products_bp.get("/search")
def search_products_route():
    try:
        page, limit = page_args(20)
        products, total = stock_ledger_service.search_products(request.args.get("q", ""), page=page, limit=limit)
        return ok(products=[p.to_dict() for p in products], pagination=pagination(page, limit, total))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("search products")


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        product = stock_ledger_service.get_product(product_id)
        return ok(product=product.to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch product")


@products_bp.post("")
def create_product_route():
    """
    Create a product, or merge the stock into an existing active product
    with the same name/type/sub_type/size (200 with merged=true).
    """
    try:
        data = json_body()
        product, merged = stock_ledger_service.create_product(data, performed_by=data.get("performed_by"))
        message = "Stock added to existing product" if merged else "Product created"
        return ok(200 if merged else 201, product=product.to_dict(), merged=merged, message=message)
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("create product")


@products_bp.put("/<int:product_id>")
def update_product_route(product_id: int):
    try:
        data = json_body()
        performed_by = data.pop("performed_by", None)
        product = stock_ledger_service.update_product(product_id, data, performed_by=performed_by)
        return ok(product=product.to_dict(), message="Product updated")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("update product")


@products_bp.delete("/<int:product_id>")
def delete_product_route(product_id: int):
    """Soft delete: the product is deactivated, its history is kept."""
    try:
        stock_ledger_service.deactivate_product(product_id)
        return ok(message="Product deactivated")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("deactivate product")


# =============================================================================
# STOCK SCENARIOS
# =============================================================================

def _scenario(product_id: int, operation, action: str):
    try:
        data = json_body()
        entry = operation(
            product_id,
            parse_quantity(data.get("quantity")),
            notes=clean_text(data.get("notes")),
            performed_by=clean_text(data.get("performed_by")),
        )
        product = stock_ledger_service.get_product(product_id)
        return ok(201, entry=entry.to_dict(), product=product.to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error(action)


@products_bp.post("/<int:product_id>/add-stock")
def add_stock_route(product_id: int):
    return _scenario(product_id, stock_ledger_service.add_stock, "add stock")


@products_bp.post("/<int:product_id>/sell")
def sell_stock_route(product_id: int):
    return _scenario(product_id, stock_ledger_service.sell_stock, "sell stock")


@products_bp.post("/<int:product_id>/return")
def customer_return_route(product_id: int):
    return _scenario(product_id, stock_ledger_service.record_customer_return, "record customer return")


@products_bp.post("/<int:product_id>/damage")
def shop_damage_route(product_id: int):
    return _scenario(product_id, stock_ledger_service.record_shop_damage, "record shop damage")


@products_bp.post("/<int:product_id>/exchange")
def damage_exchange_route(product_id: int):
    """
    Request body:
    {"damaged": {"boxes": 0, "pieces": 3}, "replacement": {"boxes": 0, "pieces": 3}, "notes": "..."}
    """
    try:
        data = json_body()
        entry = stock_ledger_service.record_customer_damage_exchange(
            product_id,
            parse_quantity(data.get("damaged"), "damaged"),
            parse_quantity(data.get("replacement"), "replacement"),
            notes=clean_text(data.get("notes")),
            performed_by=clean_text(data.get("performed_by")),
        )
        product = stock_ledger_service.get_product(product_id)
        return ok(201, entry=entry.to_dict(), product=product.to_dict())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("record damage exchange")


# =============================================================================
# HISTORY + VERIFICATION
# =============================================================================

@products_bp.get("/<int:product_id>/history")
def product_history_route(product_id: int):
    try:
        stock_ledger_service.get_product(product_id)
        page, limit = page_args(30)
        entries, total = stock_ledger_service.list_stock_history(
            product_id=product_id,
            action=request.args.get("action"),
            page=page,
            limit=limit,
        )
        return ok(history=[e.to_dict() for e in entries], pagination=pagination(page, limit, total))
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("fetch product history")


@products_bp.get("/<int:product_id>/verify")
def verify_product_route(product_id: int):
    """Replay the product's ledger and report counter drift."""
    try:
        result = stock_ledger_service.replay_product_history(product_id)
        if not result["consistent"]:
            current_app.logger.warning("Ledger drift on product %s: %s", product_id, result["drift"])
        return ok(verification=result)
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("verify product ledger")


# =============================================================================
# LOW STOCK THRESHOLDS
# =============================================================================

@products_bp.put("/<int:product_id>/low-stock-threshold")
def update_threshold_route(product_id: int):
    try:
        data = json_body()
        product = stock_ledger_service.update_low_stock_threshold(product_id, data.get("low_stock_threshold"))
        return ok(product=product.to_dict(), message="Low stock threshold updated")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("update low stock threshold")


@products_bp.put("/low-stock-threshold/bulk")
def bulk_update_threshold_route():
    try:
        data = json_body()
        updated = stock_ledger_service.bulk_update_low_stock_threshold(
            data.get("product_ids"), data.get("low_stock_threshold")
        )
        return ok(updated=updated, message=f"Updated {updated} products")
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("bulk update low stock threshold")
