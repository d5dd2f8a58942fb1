"""Version guard and retry behaviour, including two real sessions on a file database."""

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from storeledger import create_app
from storeledger.config import TestConfig
from storeledger.errors import InsufficientStockError, VersionConflictError
from storeledger.extensions import db
from storeledger.models import InventoryRecord, ProductVariant, Store
from storeledger.services import inventory_service
from storeledger.services.concurrency import guarded_flush, retry_with_backoff


class TestVersionGuard:

    def test_version_starts_at_zero_and_increments(self, db_session, store, variant, seed_stock, actor_id):
        seed_stock(variant, 10, store)
        record = inventory_service.get_inventory(variant.id, store.id)
        assert record.version == 0

        inventory_service.deduct_stock(variant.id, 3, store.id, actor_id=actor_id)
        inventory_service.return_stock(variant.id, 1, store.id, actor_id=actor_id)

        record = inventory_service.get_inventory(variant.id, store.id)
        assert record.quantity == 8
        assert record.version == 2

    def test_stale_write_raises_and_reloads(self, db_session, store, variant, seed_stock):
        seed_stock(variant, 10, store)
        record = inventory_service.get_inventory(variant.id, store.id)

        # another writer bumps the row behind the identity map
        db_session.execute(
            update(InventoryRecord)
            .where(InventoryRecord.id == record.id)
            .values(quantity=4, version=InventoryRecord.version + 1)
            .execution_options(synchronize_session=False)
        )

        record.quantity = 7
        with pytest.raises(VersionConflictError):
            guarded_flush(record)

        # the session was rolled back, so the in-memory copy reloads stored values
        assert record.quantity == 10
        assert record.version == 0


class TestRetryWithBackoff:

    def test_retries_conflicts_then_returns(self, app):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) < 3:
                raise VersionConflictError("conflict")
            return "done"

        assert retry_with_backoff(_op, max_attempts=3, backoff_base=0) == "done"
        assert len(calls) == 3

    def test_exhaustion_raises_version_conflict(self, app):
        calls = []

        def _op():
            calls.append(1)
            raise VersionConflictError("conflict")

        with pytest.raises(VersionConflictError):
            retry_with_backoff(_op, max_attempts=2, backoff_base=0)
        assert len(calls) == 2

    def test_other_errors_propagate_without_retry(self, app):
        calls = []

        def _op():
            calls.append(1)
            raise InsufficientStockError([{"requested": 2, "available": 1}])

        with pytest.raises(InsufficientStockError):
            retry_with_backoff(_op, max_attempts=5, backoff_base=0)
        assert len(calls) == 1

    def test_defaults_come_from_config(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "VERSION_RETRY_ATTEMPTS", 4)
        calls = []

        def _op():
            calls.append(1)
            raise VersionConflictError("conflict")

        with pytest.raises(VersionConflictError):
            retry_with_backoff(_op)
        assert len(calls) == 4


@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed SQLite database so two sessions really are independent."""
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'ledger.sqlite3'}"

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
        store = Store(name="Main Store", code="MAIN")
        variant = ProductVariant(sku="CHAIR-OAK", name="Oak chair")
        db.session.add_all([store, variant])
        db.session.commit()
        inventory_service.return_stock(variant.id, 10, store.id, actor_id=1)
        yield app, store.id, variant.id
        db.session.remove()
        db.drop_all()


class TestTwoSessions:

    def test_concurrent_writer_causes_conflict(self, file_app):
        app, store_id, variant_id = file_app
        record = inventory_service.get_inventory(variant_id, store_id)
        assert record.version == 0

        loaded_version = record.version
        with Session(db.engine) as other:
            theirs = other.get(InventoryRecord, record.id)
            theirs.quantity -= 4
            other.commit()

        record.quantity -= 3
        with pytest.raises(VersionConflictError):
            guarded_flush(record)

        assert record.quantity == 6
        assert record.version == loaded_version + 1

    def test_deduction_rechecks_stock_after_conflict(self, file_app):
        """A stale first attempt must not oversell: the retry sees the other sale."""
        app, store_id, variant_id = file_app
        # load the row into this session's identity map before the other sale
        inventory_service.get_inventory(variant_id, store_id)

        with Session(db.engine) as other:
            theirs = other.query(InventoryRecord).filter_by(
                store_id=store_id, product_variant_id=variant_id
            ).one()
            theirs.quantity -= 8
            other.commit()

        with pytest.raises(InsufficientStockError) as exc_info:
            inventory_service.deduct_stock(variant_id, 5, store_id, actor_id=2)

        assert exc_info.value.shortfalls[0]["available"] == 2
        record = inventory_service.get_inventory(variant_id, store_id)
        assert record.quantity == 2
