from __future__ import annotations
from datetime import datetime
from tilebooks.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .units import BoxQuantity


# Maximum amount: Rs 99,99,999.99 (999,999,999 paise)
MAX_AMOUNT_PAISE = 999_999_999


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(value: Any, field: str) -> int:
    """Strict integer coercion: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if payload.get(f) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


# -----------------------------------------------------------------------------
# Field parsers used by services for non-column inputs
# -----------------------------------------------------------------------------

def parse_count(value: Any, field: str, *, default: int = 0) -> int:
    """Non-negative integer (box or piece count)."""
    if value is None or value == "":
        return default
    n = coerce_int(value, field)
    if n < 0:
        raise ValidationError(f"{field} cannot be negative")
    return n


def parse_quantity(value: Any, field: str = "quantity") -> BoxQuantity:
    """
    Parse a {"boxes": int, "pieces": int} mapping. Missing keys are zero.
    Pieces are NOT normalized here; the ledger engine does that against the
    product's pieces_per_box.
    """
    if value is None:
        return BoxQuantity(0, 0)
    if not isinstance(value, dict):
        raise ValidationError(f"{field} must be an object with boxes and pieces")
    return BoxQuantity(
        parse_count(value.get("boxes"), f"{field}.boxes"),
        parse_count(value.get("pieces"), f"{field}.pieces"),
    )


def parse_amount(value: Any, field: str, *, default: int = 0) -> int:
    """Integer paise in [0, MAX_AMOUNT_PAISE]."""
    if value is None or value == "":
        return default
    amount = coerce_int(value, field)
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount > MAX_AMOUNT_PAISE:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_PAISE}")
    return amount


def parse_signed_amount(value: Any, field: str, *, default: int = 0) -> int:
    """Round-off style amounts that may be negative."""
    if value is None or value == "":
        return default
    amount = coerce_int(value, field)
    if abs(amount) > MAX_AMOUNT_PAISE:
        raise ValidationError(f"{field} out of range")
    return amount


def parse_choice(
    value: Any,
    field: str,
    choices: Iterable[str],
    *,
    default: str | None = None,
    upper: bool = True,
) -> str | None:
    if value is None or value == "":
        return default
    normalized = str(value).strip()
    if upper:
        normalized = normalized.upper()
    allowed = list(choices)
    if normalized not in allowed:
        raise ValidationError(f"Invalid {field}: {value}. Must be one of {allowed}")
    return normalized


def parse_optional_datetime(value: Any, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def parse_id(value: Any, field: str) -> int:
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    n = coerce_int(value, field)
    if n <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return n


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
