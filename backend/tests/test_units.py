"""
Dual-unit arithmetic tests.

Pure functions only; no database.
"""

from types import SimpleNamespace

import pytest

from tilebooks.errors import ValidationError
from tilebooks.units import (
    BoxQuantity,
    availability_status,
    calculate_available,
    damage_percentage,
    format_quantity,
    get_pieces_per_box,
    normalize_pieces,
    parse_dual_unit_input,
    return_rate,
    to_total_pieces,
    validate_boxes_pieces,
    validate_quantity,
)


def _product(ppb=4, **counters):
    fields = {"pieces_per_box": ppb}
    for counter in ("stock", "sales", "damage", "returns"):
        boxes, pieces = counters.get(counter, (0, 0))
        fields[f"{counter}_boxes"] = boxes
        fields[f"{counter}_pieces"] = pieces
    return SimpleNamespace(**fields)


class TestConversion:
    @pytest.mark.parametrize("ppb", [2, 4, 5, 6, 9])
    def test_normalize_inverts_total_for_normalized_pairs(self, ppb):
        for boxes in (0, 1, 7):
            for pieces in range(ppb):
                total = to_total_pieces(boxes, pieces, ppb)
                assert normalize_pieces(total, ppb) == BoxQuantity(boxes, pieces)

    def test_overflowing_pieces_are_folded_into_boxes(self):
        assert to_total_pieces(2, 9, 4) == to_total_pieces(4, 1, 4) == 17

    def test_negative_inputs_rejected(self):
        with pytest.raises(ValidationError):
            to_total_pieces(-1, 0, 4)
        with pytest.raises(ValidationError):
            normalize_pieces(-3, 4)

    def test_zero_pieces_per_box_rejected(self):
        with pytest.raises(ValidationError):
            normalize_pieces(10, 0)


class TestPiecesPerBox:
    def test_table_lookup(self):
        assert get_pieces_per_box("1×1") == 9
        assert get_pieces_per_box("1×1.5") == 6
        assert get_pieces_per_box("2×2") == 4
        assert get_pieces_per_box("2×4") == 2
        assert get_pieces_per_box("16×16") == 5

    def test_ascii_x_accepted(self):
        assert get_pieces_per_box("2x4") == 2

    def test_one_by_two_user_choice(self):
        assert get_pieces_per_box("1×2") == 6
        assert get_pieces_per_box("1×2", 5) == 5
        with pytest.raises(ValidationError):
            get_pieces_per_box("1×2", 7)

    def test_unknown_size(self):
        assert get_pieces_per_box("3×3") is None


class TestAvailability:
    def test_available_combines_all_counters(self):
        product = _product(4, stock=(10, 0), sales=(2, 3), damage=(0, 1), returns=(0, 2))
        available = calculate_available(product)
        # 40 - 11 - 1 + 2
        assert available.total_pieces == 30
        assert (available.boxes, available.pieces) == (7, 2)

    def test_available_is_floored_at_zero(self):
        product = _product(4, stock=(1, 0), sales=(3, 0))
        available = calculate_available(product)
        assert (available.boxes, available.pieces, available.total_pieces) == (0, 0, 0)

    def test_missing_counters_count_as_zero(self):
        product = SimpleNamespace(pieces_per_box=4, stock_boxes=2, stock_pieces=None)
        assert calculate_available(product).total_pieces == 8

    def test_status_bands(self):
        assert availability_status(0, 4) == "out_of_stock"
        assert availability_status(3, 4) == "critical"
        assert availability_status(8, 4) == "low"
        assert availability_status(12, 4) == "good"


class TestValidation:
    def test_zero_quantity(self):
        check = validate_quantity(0, 10, "sell")
        assert not check.is_valid
        assert check.message == "Must sell at least 1 piece"

    def test_insufficient(self):
        check = validate_quantity(11, 10, "sell")
        assert not check.is_valid
        assert "Available: 10 pc" in check.message

    def test_valid(self):
        assert validate_quantity(10, 10, "sell").is_valid

    def test_boxes_pieces_format(self):
        assert validate_boxes_pieces(1, 3, 4).is_valid
        assert not validate_boxes_pieces(1, 4, 4).is_valid
        assert not validate_boxes_pieces(-1, 0, 4).is_valid


class TestHelpers:
    def test_parse_dual_unit_input(self):
        result = parse_dual_unit_input(3, "boxes", 4)
        assert (result.boxes, result.pieces, result.total_pieces) == (3, 0, 12)
        result = parse_dual_unit_input(9, "pieces", 4)
        assert (result.boxes, result.pieces, result.total_pieces) == (2, 1, 9)
        with pytest.raises(ValidationError):
            parse_dual_unit_input(0, "boxes", 4)
        with pytest.raises(ValidationError):
            parse_dual_unit_input(1, "crates", 4)

    def test_percentages(self):
        assert damage_percentage(1, 3) == 33.3
        assert return_rate(0, 0) == 0

    def test_format_quantity(self):
        assert format_quantity(0, 0) == "0"
        assert format_quantity(2, 0) == "2 bx"
        assert format_quantity(0, 3) == "3 pc"
        assert format_quantity(2, 3) == "2 bx, 3 pc"
