from tilebooks.extensions import db


def test_ledger_verify_passes(app, make_product):
    make_product()
    runner = app.test_cli_runner()
    result = runner.invoke(args=["ledger", "verify"])
    assert result.exit_code == 0
    assert "Checked 1 products, 0 inconsistent." in result.output


def test_ledger_verify_reports_drift(app, make_product):
    product = make_product()
    product.stock_boxes = 2
    db.session.commit()

    runner = app.test_cli_runner()
    result = runner.invoke(args=["ledger", "verify", "--product-id", str(product.id)])
    assert result.exit_code == 1
    assert "FAIL" in result.output


def test_fix_pieces_dry_run(app, make_product):
    product = make_product()
    product.damage_pieces = 5
    db.session.commit()

    runner = app.test_cli_runner()
    result = runner.invoke(args=["products", "fix-pieces", "--dry-run"])
    assert result.exit_code == 0
    assert "Would fix 1 counters." in result.output


def test_customers_recalc(app, make_customer, make_invoice):
    make_invoice(make_customer())
    runner = app.test_cli_runner()
    result = runner.invoke(args=["customers", "recalc"])
    assert result.exit_code == 0
    assert "Recalculated 1 customers, 0 changed." in result.output
