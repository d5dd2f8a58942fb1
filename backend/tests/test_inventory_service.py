"""
Inventory ledger tests.

Covers actor enforcement, lazy record creation, single and batch movements,
adjustments against reservations, low-stock listing, the default store and
the reconstructed time series.
"""

from datetime import date, datetime

import pytest

from storeledger.errors import (
    ActorRequiredError,
    InsufficientStockError,
    NotFoundError,
    StoreNotConfiguredError,
)
from storeledger.extensions import db
from storeledger.models import InventoryTransaction
from storeledger.models.inventory import TX_ADDITION, TX_ADJUSTMENT, TX_REDUCTION
from storeledger.services import inventory_service
from storeledger.validation import ValidationError


def _tx_count(record):
    return db.session.query(InventoryTransaction).filter_by(inventory_record_id=record.id).count()


class TestActorRequired:

    @pytest.mark.parametrize("call", [
        lambda v, s: inventory_service.deduct_stock(v, 1, s, actor_id=None),
        lambda v, s: inventory_service.return_stock(v, 1, s, actor_id=None),
        lambda v, s: inventory_service.check_stock(v, 1, s, actor_id=None),
        lambda v, s: inventory_service.batch_check_stock([], s, actor_id=None),
        lambda v, s: inventory_service.batch_deduct_stock([], s, actor_id=None),
        lambda v, s: inventory_service.adjust_stock(v, 1, s, actor_id=None),
    ])
    def test_missing_actor_rejected_before_storage(self, db_session, call):
        # no store exists, so reaching storage would raise StoreNotConfiguredError instead
        with pytest.raises(ActorRequiredError):
            call(1, None)

    def test_non_integer_actor_rejected(self, db_session, store, variant):
        with pytest.raises(ValidationError):
            inventory_service.return_stock(variant.id, 1, store.id, actor_id="7")


class TestLazyCreation:

    def test_first_addition_creates_record_at_quantity(self, db_session, store, variant, actor_id):
        assert inventory_service.get_inventory(variant.id, store.id) is None

        tx = inventory_service.return_stock(variant.id, 6, store.id, actor_id=actor_id, note="opening")

        record = inventory_service.get_inventory(variant.id, store.id)
        assert record.quantity == 6
        assert record.reserved_quantity == 0
        assert record.version == 0
        assert tx.type == TX_ADDITION
        assert (tx.before_quantity, tx.quantity, tx.after_quantity) == (0, 6, 6)
        assert tx.actor_id == actor_id

    def test_unknown_variant_not_created(self, db_session, store, actor_id):
        with pytest.raises(NotFoundError):
            inventory_service.return_stock(999_999, 1, store.id, actor_id=actor_id)

    def test_deduct_without_record_reports_zero_available(self, db_session, store, variant, actor_id):
        with pytest.raises(InsufficientStockError) as exc_info:
            inventory_service.deduct_stock(variant.id, 1, store.id, actor_id=actor_id)
        assert exc_info.value.shortfalls == [{
            "product_variant_id": variant.id,
            "store_id": store.id,
            "requested": 1,
            "available": 0,
        }]
        assert inventory_service.get_inventory(variant.id, store.id) is None


class TestSingleMovements:

    def test_deduct_appends_reduction(self, db_session, store, variant, seed_stock, actor_id):
        seed_stock(variant, 10, store)

        tx = inventory_service.deduct_stock(
            variant.id, 4, store.id, actor_id=actor_id, note="walk-in", metadata={"ticket": "A-1"}
        )

        assert tx.type == TX_REDUCTION
        assert (tx.before_quantity, tx.quantity, tx.after_quantity) == (10, -4, 6)
        assert tx.meta == {"ticket": "A-1"}
        assert inventory_service.get_inventory(variant.id, store.id).quantity == 6

    def test_failed_deduct_leaves_record_untouched(self, db_session, store, variant, seed_stock, actor_id):
        seed_stock(variant, 3, store)

        with pytest.raises(InsufficientStockError):
            inventory_service.deduct_stock(variant.id, 5, store.id, actor_id=actor_id)

        record = inventory_service.get_inventory(variant.id, store.id)
        assert record.quantity == 3
        assert record.version == 0
        assert _tx_count(record) == 1

    @pytest.mark.parametrize("quantity", [0, -2, 1.5, True])
    def test_non_positive_quantities_rejected(self, db_session, store, variant, actor_id, quantity):
        with pytest.raises(ValidationError):
            inventory_service.deduct_stock(variant.id, quantity, store.id, actor_id=actor_id)

    def test_check_stock(self, db_session, store, variant, other_variant, seed_stock, actor_id):
        seed_stock(variant, 3, store)

        assert inventory_service.check_stock(variant.id, 3, store.id, actor_id=actor_id) is True
        assert inventory_service.check_stock(variant.id, 4, store.id, actor_id=actor_id) is False
        assert inventory_service.check_stock(other_variant.id, 1, store.id, actor_id=actor_id) is False

    def test_stores_are_independent(self, db_session, store, second_store, variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)
        seed_stock(variant, 2, second_store)

        inventory_service.deduct_stock(variant.id, 2, second_store.id, actor_id=actor_id)

        assert inventory_service.get_inventory(variant.id, store.id).quantity == 5
        assert inventory_service.get_inventory(variant.id, second_store.id).quantity == 0


class TestBatchMovements:

    def test_batch_deduct_is_all_or_nothing(self, db_session, store, variant, other_variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)
        seed_stock(other_variant, 1, store)

        with pytest.raises(InsufficientStockError) as exc_info:
            inventory_service.batch_deduct_stock(
                [
                    {"product_variant_id": variant.id, "quantity": 3},
                    {"product_variant_id": other_variant.id, "quantity": 2},
                ],
                store.id,
                actor_id=actor_id,
            )

        assert [s["product_variant_id"] for s in exc_info.value.shortfalls] == [other_variant.id]
        first = inventory_service.get_inventory(variant.id, store.id)
        second = inventory_service.get_inventory(other_variant.id, store.id)
        assert (first.quantity, second.quantity) == (5, 1)
        assert _tx_count(first) == 1
        assert _tx_count(second) == 1

    def test_repeated_variant_quantities_are_summed(self, db_session, store, variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)

        with pytest.raises(InsufficientStockError) as exc_info:
            inventory_service.batch_deduct_stock(
                [
                    {"product_variant_id": variant.id, "quantity": 3},
                    {"product_variant_id": variant.id, "quantity": 3},
                ],
                store.id,
                actor_id=actor_id,
            )
        assert exc_info.value.shortfalls[0]["requested"] == 6
        assert exc_info.value.shortfalls[0]["available"] == 5

    def test_batch_deduct_and_return(self, db_session, store, variant, other_variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)
        seed_stock(other_variant, 5, store)
        lines = [
            {"product_variant_id": variant.id, "quantity": 2},
            {"product_variant_id": other_variant.id, "quantity": 5},
        ]

        txs = inventory_service.batch_deduct_stock(lines, store.id, actor_id=actor_id)
        assert [tx.after_quantity for tx in txs] == [3, 0]

        txs = inventory_service.batch_return_stock(lines, store.id, actor_id=actor_id)
        assert [tx.after_quantity for tx in txs] == [5, 5]

    def test_batch_check_lists_every_shortfall(self, db_session, store, variant, other_variant, seed_stock, actor_id):
        seed_stock(variant, 1, store)
        shortfalls = inventory_service.batch_check_stock(
            [
                {"product_variant_id": variant.id, "quantity": 2},
                {"product_variant_id": other_variant.id, "quantity": 1},
            ],
            store.id,
            actor_id=actor_id,
        )
        assert {s["product_variant_id"]: s["available"] for s in shortfalls} == {
            variant.id: 1,
            other_variant.id: 0,
        }

    def test_empty_batch_rejected(self, db_session, store, actor_id):
        with pytest.raises(ValidationError):
            inventory_service.batch_deduct_stock([], store.id, actor_id=actor_id)

    @pytest.mark.parametrize("line", [7, {"quantity": 1}, {"product_variant_id": "x", "quantity": 1}, {"product_variant_id": 1}])
    def test_malformed_batch_line_is_validation_error(self, db_session, store, actor_id, line):
        with pytest.raises(ValidationError, match=r"lines\[0\]"):
            inventory_service.batch_return_stock([line], store.id, actor_id=actor_id)


class TestAdjustments:

    def test_adjust_both_directions(self, db_session, store, variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)

        up = inventory_service.adjust_stock(variant.id, 3, store.id, actor_id=actor_id, note="found")
        down = inventory_service.adjust_stock(variant.id, -2, store.id, actor_id=actor_id, note="damaged")

        assert up.type == down.type == TX_ADJUSTMENT
        assert (up.quantity, down.quantity) == (3, -2)
        assert inventory_service.get_inventory(variant.id, store.id).quantity == 6

    def test_zero_delta_rejected(self, db_session, store, variant, actor_id):
        with pytest.raises(ValidationError):
            inventory_service.adjust_stock(variant.id, 0, store.id, actor_id=actor_id)

    def test_cannot_adjust_below_reserved(self, db_session, store, variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)
        record = inventory_service.get_inventory(variant.id, store.id)
        record.reserved_quantity = 3
        db_session.commit()

        with pytest.raises(InsufficientStockError) as exc_info:
            inventory_service.adjust_stock(variant.id, -4, store.id, actor_id=actor_id)
        assert exc_info.value.shortfalls[0]["available"] == 2

        inventory_service.adjust_stock(variant.id, -2, store.id, actor_id=actor_id)
        record = inventory_service.get_inventory(variant.id, store.id)
        assert (record.quantity, record.reserved_quantity) == (3, 3)


class TestLowStock:

    def test_threshold_listing(self, db_session, store, variant, other_variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)
        seed_stock(other_variant, 10, store)

        inventory_service.set_low_stock_threshold(variant.id, 5, store.id, actor_id=actor_id)

        low = inventory_service.list_low_stock(store.id)
        assert [r.product_variant_id for r in low] == [variant.id]
        assert low[0].is_low_stock

    def test_threshold_requires_record(self, db_session, store, variant, actor_id):
        with pytest.raises(NotFoundError):
            inventory_service.set_low_stock_threshold(variant.id, 2, store.id, actor_id=actor_id)


class TestDefaultStore:

    def test_lowest_store_id_is_default(self, db_session, store, second_store, variant, actor_id):
        inventory_service.return_stock(variant.id, 4, actor_id=actor_id)

        assert inventory_service.get_inventory(variant.id, store.id).quantity == 4
        assert inventory_service.get_inventory(variant.id, second_store.id) is None

    def test_configured_default_store(self, app, db_session, store, second_store, variant, actor_id, monkeypatch):
        monkeypatch.setitem(app.config, "DEFAULT_STORE_ID", second_store.id)

        inventory_service.return_stock(variant.id, 4, actor_id=actor_id)

        assert inventory_service.get_inventory(variant.id, second_store.id).quantity == 4

    def test_no_store_is_fatal(self, db_session, variant, actor_id):
        with pytest.raises(StoreNotConfiguredError):
            inventory_service.return_stock(variant.id, 1, actor_id=actor_id)

    def test_unknown_explicit_store(self, db_session, store, variant, actor_id):
        with pytest.raises(NotFoundError):
            inventory_service.return_stock(variant.id, 1, 999_999, actor_id=actor_id)


class TestHistory:

    def test_transactions_newest_first(self, db_session, store, variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)
        inventory_service.deduct_stock(variant.id, 1, store.id, actor_id=actor_id)
        inventory_service.deduct_stock(variant.id, 2, store.id, actor_id=actor_id)

        txs = inventory_service.list_transactions(variant.id, store.id)
        assert [tx.quantity for tx in txs] == [-2, -1, 5]
        assert [tx.quantity for tx in inventory_service.list_transactions(variant.id, store.id, limit=1)] == [-2]

    def test_time_series_replays_backward(self, db_session, store, variant, actor_id, monkeypatch):
        moments = iter([
            datetime(2026, 3, 1, 9, 0),
            datetime(2026, 3, 3, 15, 30),
            datetime(2026, 3, 5, 11, 0),
        ])
        monkeypatch.setattr(inventory_service, "utcnow", lambda: next(moments))

        inventory_service.return_stock(variant.id, 10, store.id, actor_id=actor_id)
        inventory_service.deduct_stock(variant.id, 4, store.id, actor_id=actor_id)
        inventory_service.return_stock(variant.id, 2, store.id, actor_id=actor_id)

        series = inventory_service.get_inventory_time_series(
            variant.id, date(2026, 2, 28), date(2026, 3, 4), store.id, actor_id=actor_id
        )

        assert series == [
            {"date": "2026-02-28", "quantity": 0},
            {"date": "2026-03-01", "quantity": 10},
            {"date": "2026-03-02", "quantity": 10},
            {"date": "2026-03-03", "quantity": 6},
            {"date": "2026-03-04", "quantity": 6},
        ]

    def test_time_series_rejects_inverted_range(self, db_session, store, variant, actor_id):
        with pytest.raises(ValidationError):
            inventory_service.get_inventory_time_series(
                variant.id, date(2026, 3, 2), date(2026, 3, 1), store.id, actor_id=actor_id
            )
