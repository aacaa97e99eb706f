# Overview: Dual-unit (boxes + loose pieces) quantity arithmetic.

"""
Tilebooks Dual-Unit Rules (authoritative)

- Every quantity is a (boxes, pieces) pair; pieces_per_box converts between them.
- Stored pairs are normalized: 0 <= pieces < pieces_per_box.
- Arithmetic happens in total-piece space, then the result is re-normalized.
- to_total_pieces() tolerates pieces >= pieces_per_box (old rows were saved
  that way) and folds the overflow into boxes instead of failing.
- Available = stock - sales - damage + returns, floored at zero. Never stored.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ValidationError


# Nominal tile size -> pieces per box. 1×2 is the one size the user picks.
PIECES_PER_BOX_BY_SIZE = {
    "1×1": 9,
    "1×1.5": 6,
    "1×2": 6,
    "2×2": 4,
    "2×4": 2,
    "16×16": 5,
}
USER_CONFIGURABLE_SIZES = {"1×2": (5, 6)}

COUNTERS = ("stock", "sales", "damage", "returns")


@dataclass(frozen=True)
class BoxQuantity:
    boxes: int = 0
    pieces: int = 0

    def to_dict(self) -> dict:
        return {"boxes": self.boxes, "pieces": self.pieces}

    def is_zero(self) -> bool:
        return self.boxes == 0 and self.pieces == 0


@dataclass(frozen=True)
class Availability:
    boxes: int
    pieces: int
    total_pieces: int

    def to_dict(self) -> dict:
        return {"boxes": self.boxes, "pieces": self.pieces, "total_pieces": self.total_pieces}


@dataclass(frozen=True)
class QuantityCheck:
    is_valid: bool
    message: str

    def to_dict(self) -> dict:
        return {"is_valid": self.is_valid, "message": self.message}


def normalize_size(size: str | None) -> str | None:
    if size is None:
        return None
    return size.strip().replace("x", "×").replace("X", "×").replace(" ", "")


def get_pieces_per_box(size: str | None, user_choice: int | None = None) -> int | None:
    """
    Look up pieces per box for a nominal tile size.

    Returns None for an unknown size; callers must reject it.
    """
    size = normalize_size(size)
    if size not in PIECES_PER_BOX_BY_SIZE:
        return None

    allowed = USER_CONFIGURABLE_SIZES.get(size)
    if allowed and user_choice is not None:
        if user_choice not in allowed:
            raise ValidationError(
                f"Pieces per box for {size} must be one of {', '.join(str(a) for a in allowed)}"
            )
        return user_choice

    return PIECES_PER_BOX_BY_SIZE[size]


def _require_pieces_per_box(pieces_per_box: int) -> None:
    if pieces_per_box is None or pieces_per_box <= 0:
        raise ValidationError("pieces_per_box must be a positive integer")


def normalize_pieces(total_pieces: int, pieces_per_box: int) -> BoxQuantity:
    _require_pieces_per_box(pieces_per_box)
    if total_pieces < 0:
        raise ValidationError("Cannot normalize negative pieces")
    return BoxQuantity(total_pieces // pieces_per_box, total_pieces % pieces_per_box)


def to_total_pieces(boxes: int, pieces: int, pieces_per_box: int) -> int:
    _require_pieces_per_box(pieces_per_box)
    if boxes < 0 or pieces < 0:
        raise ValidationError("Cannot have negative boxes or pieces")

    # Corrupt rows with pieces >= pieces_per_box are folded into boxes.
    if pieces >= pieces_per_box:
        extra_boxes = pieces // pieces_per_box
        return (boxes + extra_boxes) * pieces_per_box + pieces % pieces_per_box

    return boxes * pieces_per_box + pieces


def quantity_total(quantity: BoxQuantity, pieces_per_box: int) -> int:
    return to_total_pieces(quantity.boxes, quantity.pieces, pieces_per_box)


def counter_total(product, counter: str) -> int:
    """Total pieces held in one of a product's four counters; missing -> 0."""
    pieces_per_box = getattr(product, "pieces_per_box", None) or 1
    return to_total_pieces(
        getattr(product, f"{counter}_boxes", None) or 0,
        getattr(product, f"{counter}_pieces", None) or 0,
        pieces_per_box,
    )


def calculate_available(product) -> Availability:
    pieces_per_box = getattr(product, "pieces_per_box", None) or 1

    available_total = (
        counter_total(product, "stock")
        - counter_total(product, "sales")
        - counter_total(product, "damage")
        + counter_total(product, "returns")
    )
    if available_total < 0:
        return Availability(0, 0, 0)

    normalized = normalize_pieces(available_total, pieces_per_box)
    return Availability(normalized.boxes, normalized.pieces, available_total)


def validate_quantity(total_pieces_needed: int, available_total_pieces: int, operation: str = "sale") -> QuantityCheck:
    if total_pieces_needed < 0:
        return QuantityCheck(False, f"Cannot {operation} negative quantity")

    if total_pieces_needed == 0:
        return QuantityCheck(False, f"Must {operation} at least 1 piece")

    if total_pieces_needed > available_total_pieces:
        return QuantityCheck(
            False,
            f"Insufficient quantity. Available: {available_total_pieces} pc, Needed: {total_pieces_needed} pc",
        )

    return QuantityCheck(True, f"Valid for {operation}")


def validate_boxes_pieces(boxes: int, pieces: int, pieces_per_box: int) -> QuantityCheck:
    if boxes < 0 or pieces < 0:
        return QuantityCheck(False, "Boxes and pieces cannot be negative")

    if pieces >= pieces_per_box:
        return QuantityCheck(False, f"Pieces must be less than {pieces_per_box}")

    return QuantityCheck(True, "Valid format")


def parse_dual_unit_input(input_value: int, input_type: str, pieces_per_box: int) -> Availability:
    """Turn a single 'N boxes' or 'N pieces' entry into a normalized quantity."""
    if input_value <= 0:
        raise ValidationError("Input value must be positive")

    if input_type == "boxes":
        total = input_value * pieces_per_box
    elif input_type == "pieces":
        total = input_value
    else:
        raise ValidationError("Invalid input type")

    normalized = normalize_pieces(total, pieces_per_box)
    return Availability(normalized.boxes, normalized.pieces, total)


def availability_status(available_total_pieces: int, pieces_per_box: int) -> str:
    if available_total_pieces == 0:
        return "out_of_stock"

    available_boxes = available_total_pieces // pieces_per_box
    if available_boxes >= 3:
        return "good"
    if available_boxes >= 1:
        return "low"
    return "critical"


def _percentage(part: int, whole: int) -> float:
    if whole == 0:
        return 0
    return round(part / whole * 100, 1)


def damage_percentage(damage_total_pieces: int, stock_total_pieces: int) -> float:
    return _percentage(damage_total_pieces, stock_total_pieces)


def return_rate(returns_total_pieces: int, sales_total_pieces: int) -> float:
    return _percentage(returns_total_pieces, sales_total_pieces)


def format_quantity(boxes: int, pieces: int) -> str:
    """Ledger note text: '2 bx, 3 pc', with a zero dimension left out."""
    if boxes == 0 and pieces == 0:
        return "0"
    if boxes == 0:
        return f"{pieces} pc"
    if pieces == 0:
        return f"{boxes} bx"
    return f"{boxes} bx, {pieces} pc"
