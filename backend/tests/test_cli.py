from storeledger.extensions import db
from storeledger.models import Store
from storeledger.services import inventory_service


class TestSystemCommands:

    def test_init_creates_first_store_once(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["system", "init", "--store-name", "Flagship", "--store-code", "FLAG"])
        assert result.exit_code == 0
        assert "PASS Created store" in result.output

        result = runner.invoke(args=["system", "init"])
        assert "SKIP" in result.output
        assert db.session.query(Store).count() == 1


class TestInspectionCommands:

    def test_inventory_show(self, app, store, variant, seed_stock):
        seed_stock(variant, 4, store)

        result = app.test_cli_runner().invoke(args=["inventory", "show", str(variant.id)])

        assert result.exit_code == 0
        assert "quantity=4" in result.output
        assert "seed" in result.output

    def test_low_stock(self, app, store, variant, seed_stock, actor_id):
        seed_stock(variant, 1, store)
        inventory_service.set_low_stock_threshold(variant.id, 2, store.id, actor_id=actor_id)

        result = app.test_cli_runner().invoke(args=["inventory", "low-stock"])

        assert f"variant={variant.id}" in result.output

    def test_backorder_report(self, app, store, variant):
        result = app.test_cli_runner().invoke(args=["backorders", "report", str(variant.id)])

        assert result.exit_code == 0
        assert "0 pending line(s)" in result.output
