# Overview: Flask API routes for read-only reports.

from flask import Blueprint

from ..errors import TilebooksError
from ..services import report_service
from .common import error_response, ok, server_error


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.get("/inventory")
def inventory_report_route():
    try:
        return ok(report=report_service.inventory_report())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("build inventory report")


@reports_bp.get("/dashboard")
def dashboard_route():
    try:
        return ok(stats=report_service.dashboard_stats())
    except TilebooksError as e:
        return error_response(e)
    except Exception:
        return server_error("build dashboard stats")
