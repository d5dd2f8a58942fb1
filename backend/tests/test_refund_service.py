import pytest

from storeledger.errors import IllegalStatusTransitionError, NotFoundError, RefundQuantityError
from storeledger.services import inventory_service, order_service, purchase_service, refund_service


@pytest.fixture
def sale(db_session, store, variant, seed_stock, actor_id):
    """A fulfilled stocked sale of 3 units at 10.00 with 0.01 line discount."""
    seed_stock(variant, 5, store)
    return order_service.create_order(
        {
            "store_id": store.id,
            "items": [{
                "product_variant_id": variant.id,
                "quantity": 3,
                "unit_price_cents": 1000,
                "discount_cents": 1,
                "is_stocked_sale": True,
            }],
        },
        actor_id=actor_id,
    )


def _refund(order, quantity, actor_id, **kwargs):
    return refund_service.create_refund(
        order.id, [{"order_line_id": order.lines[0].id, "quantity": quantity}], actor_id=actor_id, **kwargs
    )


def _quantity(variant, store):
    return inventory_service.get_inventory(variant.id, store.id).quantity


class TestRefundQuantities:

    def test_restocking_refund(self, sale, store, variant, actor_id):
        refund = _refund(sale, 1, actor_id)

        assert refund.refund_number == f"RF-{store.id:03d}-0001"
        assert refund.lines[0].restocked_quantity == 1
        assert sale.lines[0].refunded_quantity == 1
        assert _quantity(variant, store) == 3

    def test_refund_without_restock_keeps_ledger(self, sale, store, variant, actor_id):
        refund = _refund(sale, 2, actor_id, restock=False)

        assert refund.lines[0].restocked_quantity == 0
        assert _quantity(variant, store) == 2

    def test_cannot_exceed_refundable_across_refunds(self, sale, actor_id):
        _refund(sale, 2, actor_id)

        with pytest.raises(RefundQuantityError) as exc_info:
            _refund(sale, 2, actor_id)
        assert exc_info.value.details["refundable"] == 1

    def test_repeated_line_items_are_summed(self, sale, actor_id):
        line_id = sale.lines[0].id
        with pytest.raises(RefundQuantityError):
            refund_service.create_refund(
                sale.id,
                [{"order_line_id": line_id, "quantity": 2}, {"order_line_id": line_id, "quantity": 2}],
                actor_id=actor_id,
            )
        assert refund_service.list_refunds(sale.id) == []

    def test_zero_quantity_rejected(self, sale, actor_id):
        with pytest.raises(RefundQuantityError):
            _refund(sale, 0, actor_id)

    def test_line_from_another_order(self, sale, actor_id):
        with pytest.raises(NotFoundError):
            refund_service.create_refund(sale.id, [{"order_line_id": 999_999, "quantity": 1}], actor_id=actor_id)

    def test_cancelled_order_cannot_be_refunded(self, sale, actor_id):
        order_service.cancel_order(sale.id, actor_id=actor_id)
        with pytest.raises(IllegalStatusTransitionError):
            _refund(sale, 1, actor_id)

    def test_unfulfilled_backorder_has_nothing_to_refund(self, db_session, store, variant, actor_id):
        order = order_service.create_order(
            {
                "store_id": store.id,
                "items": [{"product_variant_id": variant.id, "quantity": 2,
                           "unit_price_cents": 1000, "is_backorder": True}],
            },
            actor_id=actor_id,
        )
        with pytest.raises(RefundQuantityError):
            _refund(order, 1, actor_id)

    def test_custom_line_refunds_full_quantity(self, db_session, store, actor_id):
        order = order_service.create_order(
            {"store_id": store.id, "items": [{"product_variant_id": None, "product_name": "Assembly",
                                              "quantity": 2, "unit_price_cents": 2500}]},
            actor_id=actor_id,
        )
        refund = _refund(order, 2, actor_id)
        assert refund.total_refund_cents == 5000
        assert refund.lines[0].restocked_quantity == 0


class TestRefundAmounts:

    def test_pro_rata_with_remainder_on_last_unit(self, sale, actor_id):
        # line total 2999 cents over 3 units
        amounts = [_refund(sale, 1, actor_id).total_refund_cents for _ in range(3)]
        assert amounts == [999, 999, 1001]
        assert sum(amounts) == sale.lines[0].line_total_cents

    def test_whole_line_refund(self, sale, actor_id):
        assert _refund(sale, 3, actor_id).total_refund_cents == 2999


class TestAllocatedLines:

    @pytest.fixture
    def allocated(self, db_session, store, variant, actor_id):
        order = order_service.create_order(
            {
                "store_id": store.id,
                "items": [{"product_variant_id": variant.id, "quantity": 3,
                           "unit_price_cents": 1000, "is_backorder": True}],
            },
            actor_id=actor_id,
        )
        purchase_service.create_purchase(
            {"store_id": store.id, "status": "completed",
             "items": [{"product_variant_id": variant.id, "quantity": 3, "cost_price_cents": 400}]},
            actor_id=actor_id,
        )
        return order

    def test_restock_frees_reservation(self, allocated, store, variant, actor_id):
        _refund(allocated, 2, actor_id, restock=True)

        record = inventory_service.get_inventory(variant.id, store.id)
        assert (record.quantity, record.reserved_quantity) == (3, 1)

    def test_write_off_removes_units(self, allocated, store, variant, actor_id):
        refund = _refund(allocated, 2, actor_id, restock=False)

        record = inventory_service.get_inventory(variant.id, store.id)
        assert (record.quantity, record.reserved_quantity) == (1, 1)
        assert refund.lines[0].restocked_quantity == 0
