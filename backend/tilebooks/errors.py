# Overview: Domain error taxonomy shared by services and routes.

from __future__ import annotations


class TilebooksError(Exception):
    """Base class for errors that map onto an HTTP status."""
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(TilebooksError, ValueError):
    """400-level input problem."""
    status_code = 400


class NotFoundError(TilebooksError, LookupError):
    """Referenced entity does not exist (or is soft-deleted)."""
    status_code = 404


class InsufficientStockError(TilebooksError):
    """Requested quantity exceeds the product's available quantity."""
    status_code = 400


class InsufficientCreditError(TilebooksError):
    """Customer's CREDIT returns do not cover the requested amount."""
    status_code = 400


class PersistenceError(TilebooksError):
    """
    A store write failed partway through a multi-step operation.

    `step` names the write that failed; `context` carries the ids involved
    (product_id, invoice_id, ...). The operation has been rolled back.
    """
    status_code = 500

    def __init__(self, step: str, **context):
        ids = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        message = f"Failed to persist {step}" + (f" ({ids})" if ids else "")
        super().__init__(message, details=dict(context, step=step))
        self.step = step
        self.context = context
