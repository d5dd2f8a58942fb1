import pytest

from storeledger.errors import IllegalStatusTransitionError, InsufficientStockError, NotFoundError
from storeledger.extensions import db
from storeledger.models import InventoryTransfer
from storeledger.models.inventory import TX_TRANSFER_CANCEL, TX_TRANSFER_IN, TX_TRANSFER_OUT
from storeledger.services import inventory_service, transfer_service
from storeledger.validation import ValidationError


def _quantity(variant, store):
    record = inventory_service.get_inventory(variant.id, store.id)
    return record.quantity if record else 0


class TestCreateTransfer:

    def test_moves_stock_with_paired_transactions(self, db_session, store, second_store, variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)

        transfer = transfer_service.create_transfer(store.id, second_store.id, variant.id, 2, actor_id=actor_id)

        assert transfer.transfer_number == f"TR-{store.id:03d}-0001"
        assert transfer.status == "completed"
        assert _quantity(variant, store) == 3
        assert _quantity(variant, second_store) == 2

        out_tx = inventory_service.list_transactions(variant.id, store.id, limit=1)[0]
        in_tx = inventory_service.list_transactions(variant.id, second_store.id, limit=1)[0]
        assert (out_tx.type, out_tx.quantity) == (TX_TRANSFER_OUT, -2)
        assert (in_tx.type, in_tx.quantity) == (TX_TRANSFER_IN, 2)
        assert out_tx.meta["transfer_id"] == in_tx.meta["transfer_id"] == transfer.id

    def test_insufficient_source_writes_nothing(self, db_session, store, second_store, variant, seed_stock, actor_id):
        seed_stock(variant, 1, store)

        with pytest.raises(InsufficientStockError):
            transfer_service.create_transfer(store.id, second_store.id, variant.id, 2, actor_id=actor_id)

        assert db.session.query(InventoryTransfer).count() == 0
        assert _quantity(variant, store) == 1
        assert inventory_service.get_inventory(variant.id, second_store.id) is None

    def test_same_store_rejected(self, db_session, store, variant, seed_stock, actor_id):
        seed_stock(variant, 1, store)
        with pytest.raises(ValidationError):
            transfer_service.create_transfer(store.id, store.id, variant.id, 1, actor_id=actor_id)

    def test_unknown_destination(self, db_session, store, variant, seed_stock, actor_id):
        seed_stock(variant, 1, store)
        with pytest.raises(NotFoundError):
            transfer_service.create_transfer(store.id, 999_999, variant.id, 1, actor_id=actor_id)


class TestCancelTransfer:

    def test_cancel_moves_stock_back(self, db_session, store, second_store, variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)
        transfer = transfer_service.create_transfer(store.id, second_store.id, variant.id, 2, actor_id=actor_id)

        cancelled = transfer_service.cancel_transfer(transfer.id, actor_id=actor_id, reason="wrong store")

        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at is not None
        assert _quantity(variant, store) == 5
        assert _quantity(variant, second_store) == 0
        back = inventory_service.list_transactions(variant.id, store.id, limit=1)[0]
        assert back.type == TX_TRANSFER_CANCEL
        assert back.meta["reason"] == "wrong store"

    def test_cancel_twice_rejected(self, db_session, store, second_store, variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)
        transfer = transfer_service.create_transfer(store.id, second_store.id, variant.id, 2, actor_id=actor_id)
        transfer_service.cancel_transfer(transfer.id, actor_id=actor_id)

        with pytest.raises(IllegalStatusTransitionError):
            transfer_service.cancel_transfer(transfer.id, actor_id=actor_id)
        assert _quantity(variant, store) == 5

    def test_cancel_after_destination_sold(self, db_session, store, second_store, variant, seed_stock, actor_id):
        seed_stock(variant, 5, store)
        transfer = transfer_service.create_transfer(store.id, second_store.id, variant.id, 2, actor_id=actor_id)
        inventory_service.deduct_stock(variant.id, 1, second_store.id, actor_id=actor_id)

        with pytest.raises(InsufficientStockError):
            transfer_service.cancel_transfer(transfer.id, actor_id=actor_id)

        assert transfer_service.get_transfer(transfer.id).status == "completed"
        assert _quantity(variant, store) == 3
