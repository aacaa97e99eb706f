"""
Stock ledger tests: the five mutation scenarios, damage variants, product
master operations and ledger replay.
"""

import pytest

from tilebooks.errors import InsufficientStockError, NotFoundError, ValidationError
from tilebooks.extensions import db
from tilebooks.models import DamagedInventory, Product, StockHistory
from tilebooks.services import invoice_service, stock_ledger_service as ledger
from tilebooks.units import BoxQuantity, calculate_available


def _history(product_id):
    return (
        db.session.query(StockHistory)
        .filter_by(product_id=product_id)
        .order_by(StockHistory.id.asc())
        .all()
    )


def _reload(product_id) -> Product:
    db.session.expire_all()
    return db.session.get(Product, product_id)


class TestScenarios:
    def test_sell_normalizes_sales_and_available(self, make_product):
        product = make_product()

        ledger.sell_stock(product.id, BoxQuantity(2, 3))
        product = _reload(product.id)
        assert product.get_counter("sales") == BoxQuantity(2, 3)
        available = calculate_available(product)
        assert (available.boxes, available.pieces) == (7, 1)

        ledger.sell_stock(product.id, BoxQuantity(0, 2))
        product = _reload(product.id)
        assert product.get_counter("sales") == BoxQuantity(3, 1)

    def test_sell_writes_snapshot_entry(self, make_product):
        product = make_product()
        entry = ledger.sell_stock(product.id, BoxQuantity(1, 0), notes="walk-in", performed_by="ravi")

        assert entry.action == ledger.ACTION_SELL
        assert (entry.change_boxes, entry.change_pieces) == (1, 0)
        assert (entry.quantity_boxes, entry.quantity_pieces) == (9, 0)
        assert entry.counters["sales"] == {"boxes": 1, "pieces": 0}
        assert entry.performed_by == "ravi"

    def test_oversell_leaves_counters_untouched(self, make_product):
        product = make_product(stock={"boxes": 1, "pieces": 0})
        entries_before = len(_history(product.id))

        with pytest.raises(InsufficientStockError) as exc:
            ledger.sell_stock(product.id, BoxQuantity(1, 1))
        assert "Available: 4 pc, Needed: 5 pc" in exc.value.message

        product = _reload(product.id)
        assert product.get_counter("sales") == BoxQuantity(0, 0)
        assert len(_history(product.id)) == entries_before

    def test_zero_quantity_rejected(self, make_product):
        product = make_product()
        with pytest.raises(ValidationError, match="Must sell at least 1 piece"):
            ledger.sell_stock(product.id, BoxQuantity(0, 0))
        with pytest.raises(ValidationError, match="Must add at least 1 piece"):
            ledger.add_stock(product.id, BoxQuantity(0, 0))

    def test_add_stock_folds_loose_pieces(self, make_product):
        product = make_product()
        entry = ledger.add_stock(product.id, BoxQuantity(0, 6))

        product = _reload(product.id)
        assert product.get_counter("stock") == BoxQuantity(11, 2)
        assert (entry.change_boxes, entry.change_pieces) == (1, 2)

    def test_customer_return_floors_sales(self, make_product):
        product = make_product()
        ledger.sell_stock(product.id, BoxQuantity(0, 2))

        ledger.record_customer_return(product.id, BoxQuantity(1, 0))
        product = _reload(product.id)
        assert product.get_counter("sales") == BoxQuantity(0, 0)
        assert product.get_counter("returns") == BoxQuantity(1, 0)

    def test_shop_damage_registers_damaged_stock(self, make_product):
        product = make_product()
        ledger.record_shop_damage(product.id, BoxQuantity(0, 3), notes="dropped pallet")

        product = _reload(product.id)
        assert product.get_counter("damage") == BoxQuantity(0, 3)
        record = db.session.query(DamagedInventory).filter_by(product_id=product.id).one()
        assert (record.damage_type, record.status) == ("shop", "pending")
        assert (record.boxes, record.pieces) == (0, 3)

    def test_same_product_exchange(self, make_product):
        product = make_product()
        entry = ledger.record_customer_damage_exchange(product.id, BoxQuantity(0, 2), BoxQuantity(0, 2))

        product = _reload(product.id)
        assert product.get_counter("damage") == BoxQuantity(0, 2)
        assert product.get_counter("returns") == BoxQuantity(0, 2)
        assert product.get_counter("sales") == BoxQuantity(0, 2)
        assert (entry.replacement_boxes, entry.replacement_pieces) == (0, 2)
        # Damaged pieces come back and go to damage, fresh pieces leave
        assert calculate_available(product).total_pieces == 38

    def test_exchange_checks_replacement_availability(self, make_product):
        product = make_product(stock={"boxes": 0, "pieces": 1})
        with pytest.raises(InsufficientStockError):
            ledger.record_customer_damage_exchange(product.id, BoxQuantity(0, 1), BoxQuantity(0, 3))

    def test_missing_product(self, db_session):
        with pytest.raises(NotFoundError):
            ledger.add_stock(999, BoxQuantity(1, 0))


class TestDamageVariants:
    def test_own_damage_notes(self, make_product):
        product = make_product()
        [entry] = ledger.record_damage(product.id, "own", BoxQuantity(1, 2), damage_reason="cracked")

        assert entry.action == ledger.ACTION_DAMAGE_OWN
        assert entry.notes == "Own damage: 1 bx, 2 pc - Reason: cracked"

    def test_customer_refund(self, make_product):
        product = make_product()
        [entry] = ledger.record_damage(product.id, "customer-refund", BoxQuantity(0, 3), customer_name="Asha")

        product = _reload(product.id)
        assert product.get_counter("damage") == BoxQuantity(0, 3)
        assert product.get_counter("returns") == BoxQuantity(0, 3)
        assert "Customer: Asha" in entry.notes
        record = db.session.query(DamagedInventory).filter_by(product_id=product.id).one()
        assert (record.damage_type, record.status) == ("customer", "returned")

    def test_exchange_different_links_both_entries(self, make_product):
        damaged = make_product()
        replacement = make_product(size="2×4", stock={"boxes": 5, "pieces": 0})

        first, second = ledger.record_damage(
            damaged.id, "exchange-different", BoxQuantity(0, 2),
            replacement=BoxQuantity(1, 0), replacement_product_id=replacement.id,
        )

        assert first.action == ledger.ACTION_EXCHANGE_DIFFERENT
        assert second.action == ledger.ACTION_SALE_EXCHANGE
        assert first.related_transaction_id == second.id
        assert second.related_transaction_id == first.id
        assert first.related_product_id == replacement.id

        replacement = _reload(replacement.id)
        assert replacement.get_counter("sales") == BoxQuantity(1, 0)

    def test_exchange_different_requires_replacement(self, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            ledger.record_damage(product.id, "exchange-different", BoxQuantity(0, 2))

    def test_invalid_damage_type(self, make_product):
        product = make_product()
        with pytest.raises(ValidationError, match="Invalid damage type"):
            ledger.record_damage(product.id, "flood", BoxQuantity(0, 2))


class TestProductMaster:
    def test_create_merges_into_existing_product(self, make_product):
        product = make_product(name="Ivory Matt")
        merged, was_merged = ledger.create_product({
            "name": "Ivory Matt", "type": "Wall", "size": "2x2", "stock": {"boxes": 2, "pieces": 1},
        })

        assert was_merged
        assert merged.id == product.id
        assert _reload(product.id).get_counter("stock") == BoxQuantity(12, 1)

    def test_create_generates_name_and_requires_classification(self, db_session):
        product, _ = ledger.create_product({"type": "Floor", "sub_type": "Vitrified", "size": "1×2",
                                            "pieces_per_box": 5})
        assert product.name == "Floor Vitrified 1×2"
        assert product.pieces_per_box == 5

        with pytest.raises(ValidationError, match="Type and Size are required"):
            ledger.create_product({"type": "Wall"})
        with pytest.raises(ValidationError, match="SubType is required for Floor tiles"):
            ledger.create_product({"type": "Floor", "size": "2×2"})

    def test_update_pieces_per_box_keeps_boxes(self, make_product):
        product = make_product(size="1×2", pieces_per_box=6)
        ledger.sell_stock(product.id, BoxQuantity(2, 3))

        ledger.update_product(product.id, {"pieces_per_box": 5})
        product = _reload(product.id)
        assert product.get_counter("stock") == BoxQuantity(10, 0)
        assert product.get_counter("sales") == BoxQuantity(2, 3)
        assert _history(product.id)[-1].action == ledger.ACTION_PRODUCT_UPDATE

    def test_deactivated_product_is_hidden(self, make_product):
        product = make_product()
        ledger.deactivate_product(product.id)
        with pytest.raises(NotFoundError):
            ledger.get_product(product.id)

    def test_list_products_filters(self, make_product):
        make_product(stock={"boxes": 0, "pieces": 0})
        stocked = make_product()

        products, total = ledger.list_products(in_stock_only=True)
        assert total == 1
        assert products[0].id == stocked.id

    def test_bulk_threshold(self, make_product):
        a, b = make_product(), make_product()
        assert ledger.bulk_update_low_stock_threshold([a.id, b.id], 12) == 2
        assert _reload(a.id).is_low_stock()
        with pytest.raises(ValidationError, match="Product IDs are required"):
            ledger.bulk_update_low_stock_threshold([], 3)


class TestReplay:
    def test_replay_reproduces_counters(self, make_product):
        product = make_product()
        other = make_product(size="2×4")
        ledger.add_stock(product.id, BoxQuantity(2, 1))
        ledger.sell_stock(product.id, BoxQuantity(3, 3))
        ledger.record_customer_return(product.id, BoxQuantity(0, 2))
        ledger.record_shop_damage(product.id, BoxQuantity(0, 1))
        ledger.record_customer_damage_exchange(product.id, BoxQuantity(0, 1), BoxQuantity(0, 2))
        ledger.record_damage(product.id, "exchange-different", BoxQuantity(0, 1),
                             replacement=BoxQuantity(1, 0), replacement_product_id=other.id)

        for pid in (product.id, other.id):
            result = ledger.replay_product_history(pid)
            assert result["consistent"], result["drift"]

    def test_replay_restarts_from_product_update_snapshot(self, make_product):
        product = make_product()
        ledger.sell_stock(product.id, BoxQuantity(1, 0))
        ledger.update_product(product.id, {"stock": {"boxes": 20, "pieces": 0}})
        ledger.sell_stock(product.id, BoxQuantity(0, 1))

        assert ledger.replay_product_history(product.id)["consistent"]

    def test_replay_detects_drift(self, make_product):
        product = make_product()
        product.stock_boxes = 3
        db.session.commit()

        result = ledger.replay_product_history(product.id)
        assert not result["consistent"]
        assert result["drift"]["stock"]["expected"] == {"boxes": 10, "pieces": 0}

    def test_fix_pieces(self, make_product):
        product = make_product()
        product.sales_pieces = 9
        db.session.commit()

        fixes = ledger.normalize_product_counters(dry_run=True)
        assert len(fixes) == 1
        assert _reload(product.id).sales_pieces == 9

        ledger.normalize_product_counters()
        assert _reload(product.id).get_counter("sales") == BoxQuantity(2, 1)


class TestReplayAcrossInvoices:
    def _corrections(self, product_id):
        return [e for e in _history(product_id) if e.action == ledger.ACTION_LEDGER_CORRECTION]

    def _sell_then_return(self, product, make_customer, make_invoice):
        invoice = make_invoice(make_customer(), product, quantity={"boxes": 0, "pieces": 5})
        ledger.record_customer_return(product.id, BoxQuantity(1, 0))
        ledger.sell_stock(product.id, BoxQuantity(0, 3))
        return invoice

    def test_delete_after_customer_return_keeps_replay_consistent(self, make_product, make_customer, make_invoice):
        product = make_product()
        invoice = self._sell_then_return(product, make_customer, make_invoice)

        invoice_service.delete_invoice(invoice.id)

        assert _reload(product.id).get_counter("sales") == BoxQuantity(0, 0)
        result = ledger.replay_product_history(product.id)
        assert result["consistent"], result["drift"]
        [correction] = self._corrections(product.id)
        assert correction.counters["sales"] == {"boxes": 0, "pieces": 0}
        assert correction.invoice_id is None

    def test_edit_then_delete_after_customer_return(self, make_product, make_customer, make_invoice):
        product = make_product()
        invoice = self._sell_then_return(product, make_customer, make_invoice)

        invoice_service.update_invoice(invoice.id, {
            "items": [{"product_id": product.id, "quantity": {"boxes": 0, "pieces": 2}, "price_per_box": 100000}],
            "final_amount": 50000,
        })
        assert _reload(product.id).get_counter("sales") == BoxQuantity(0, 2)
        assert ledger.replay_product_history(product.id)["consistent"]

        invoice_service.delete_invoice(invoice.id)
        assert _reload(product.id).get_counter("sales") == BoxQuantity(0, 0)
        assert ledger.replay_product_history(product.id)["consistent"]
        assert len(self._corrections(product.id)) == 1

    def test_unclamped_reversal_writes_no_correction(self, make_product, make_customer, make_invoice):
        product = make_product()
        invoice = make_invoice(make_customer(), product, quantity={"boxes": 1, "pieces": 2})
        ledger.sell_stock(product.id, BoxQuantity(0, 3))

        invoice_service.delete_invoice(invoice.id)

        assert _reload(product.id).get_counter("sales") == BoxQuantity(0, 3)
        assert ledger.replay_product_history(product.id)["consistent"]
        assert self._corrections(product.id) == []

    def test_existing_drift_is_not_masked(self, make_product, make_customer, make_invoice):
        product = make_product()
        invoice = self._sell_then_return(product, make_customer, make_invoice)
        product.stock_boxes = 3
        db.session.commit()

        invoice_service.delete_invoice(invoice.id)

        assert self._corrections(product.id) == []
        assert "stock" in ledger.replay_product_history(product.id)["drift"]
