# Overview: Request parsing and response envelope helpers shared by the API blueprints.

from __future__ import annotations

from flask import current_app, jsonify, request

from ..errors import TilebooksError, ValidationError
from ..validation import coerce_int, parse_optional_datetime


MAX_PAGE_SIZE = 200


def ok(status: int = 200, **payload):
    return jsonify({"success": True, **payload}), status


def error_response(e: TilebooksError):
    body = {"success": False, "message": e.message, "error": e.message}
    if e.details:
        body["details"] = e.details
    return jsonify(body), e.status_code


def server_error(action: str):
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"success": False, "message": "Internal server error", "error": f"Failed to {action}"}), 500


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


def int_arg(name: str, default: int | None = None) -> int | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    return coerce_int(raw, name)


def bool_arg(name: str) -> bool:
    return request.args.get(name, "").strip().lower() in ("1", "true", "yes")


def date_arg(name: str):
    return parse_optional_datetime(request.args.get(name), name)


def page_args(default_limit: int | None = None) -> tuple[int, int]:
    page = int_arg("page", 1)
    limit = int_arg("limit", default_limit or current_app.config.get("DEFAULT_PAGE_SIZE", 50))
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return page, limit


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit,
    }
