"""Turning waiting backorder lines into pending purchases."""

from datetime import timedelta

import pytest

from storeledger.errors import ActorRequiredError, BusinessRuleError, NotFoundError
from storeledger.extensions import db
from storeledger.models import Order, OrderLine, Purchase
from storeledger.services import backorder_service, inventory_service, order_service, purchase_service
from storeledger.time_utils import utcnow
from storeledger.validation import ValidationError


def _backorder_item(variant, quantity):
    return {
        "product_variant_id": variant.id,
        "quantity": quantity,
        "unit_price_cents": 1000,
        "is_backorder": True,
    }


@pytest.fixture
def place_backorder(db_session, actor_id):
    def _place(store, *lines):
        return order_service.create_order(
            {"store_id": store.id, "items": [_backorder_item(variant, quantity) for variant, quantity in lines]},
            actor_id=actor_id,
        )
    return _place


def _line_ids(*orders):
    return [line.id for order in orders for line in order.lines]


# =============================================================================
# SUMMARY
# =============================================================================

class TestBackorderSummary:

    def test_groups_outstanding_demand_per_variant(self, store, variant, other_variant, place_backorder):
        first = place_backorder(store, (variant, 3), (other_variant, 1))
        second = place_backorder(store, (variant, 2))

        summary = backorder_service.get_backorder_summary()

        assert [entry["product_variant_id"] for entry in summary] == [variant.id, other_variant.id]
        sofa, lamp = summary
        assert sofa["total_quantity"] == 5
        assert sofa["order_count"] == 2
        assert sofa["order_line_ids"] == [first.lines[0].id, second.lines[0].id]
        assert sofa["sku"] == "SOFA-GRY-3S"
        assert (lamp["total_quantity"], lamp["order_count"]) == (1, 1)

    def test_converted_and_cancelled_lines_are_left_out(self, store, variant, place_backorder, actor_id):
        converted = place_backorder(store, (variant, 3))
        cancelled = place_backorder(store, (variant, 4))
        waiting = place_backorder(store, (variant, 2))
        purchase_service.create_purchase_from_backorders(_line_ids(converted), actor_id=actor_id)
        order_service.cancel_order(cancelled.id, actor_id=actor_id)

        summary = backorder_service.get_backorder_summary()

        assert len(summary) == 1
        assert summary[0]["order_line_ids"] == _line_ids(waiting)
        assert summary[0]["total_quantity"] == 2

    def test_store_and_date_filters(self, store, second_store, variant, place_backorder):
        old = place_backorder(store, (variant, 3))
        place_backorder(store, (variant, 2))
        place_backorder(second_store, (variant, 7))
        db.session.get(Order, old.id).created_at = utcnow() - timedelta(days=40)
        db.session.commit()

        by_store = backorder_service.get_backorder_summary(store_id=store.id)
        recent = backorder_service.get_backorder_summary(
            store_id=store.id, date_from=(utcnow() - timedelta(days=7)).date()
        )

        assert by_store[0]["total_quantity"] == 5
        assert recent[0]["total_quantity"] == 2

    def test_inverted_date_range(self, db_session):
        today = utcnow().date()
        with pytest.raises(ValidationError):
            backorder_service.get_backorder_summary(date_from=today, date_to=today - timedelta(days=1))


# =============================================================================
# CONVERSION
# =============================================================================

class TestCreatePurchaseFromBackorders:

    def test_one_pending_purchase_per_store_one_line_per_variant(
        self, store, variant, other_variant, place_backorder, actor_id
    ):
        first = place_backorder(store, (variant, 3), (other_variant, 1))
        second = place_backorder(store, (variant, 2))

        purchases = purchase_service.create_purchase_from_backorders(_line_ids(first, second), actor_id=actor_id)

        assert len(purchases) == 1
        purchase = purchases[0]
        assert purchase.order_number == f"PO-{store.id:03d}-0001"
        assert purchase.status == "pending"
        assert [(l.product_variant_id, l.quantity, l.cost_price_cents) for l in purchase.lines] == [
            (variant.id, 5, 70000),
            (other_variant.id, 1, 3500),
        ]
        assert purchase.total_amount_cents == 5 * 70000 + 3500

        by_variant = {l.product_variant_id: l.id for l in purchase.lines}
        for line in db.session.query(OrderLine).all():
            assert line.purchase_line_id == by_variant[line.product_variant_id]
        assert inventory_service.get_inventory(variant.id, store.id) is None

    def test_orders_of_different_stores_get_separate_purchases(
        self, store, second_store, variant, place_backorder, actor_id
    ):
        here = place_backorder(store, (variant, 3))
        there = place_backorder(second_store, (variant, 4))

        purchases = purchase_service.create_purchase_from_backorders(_line_ids(there, here), actor_id=actor_id)

        assert [(p.store_id, p.lines[0].quantity) for p in purchases] == [(store.id, 3), (second_store.id, 4)]

    def test_explicit_store_receives_everything(self, store, second_store, variant, place_backorder, actor_id):
        here = place_backorder(store, (variant, 3))
        there = place_backorder(second_store, (variant, 4))

        purchases = purchase_service.create_purchase_from_backorders(
            _line_ids(here, there), second_store.id, actor_id=actor_id
        )

        assert len(purchases) == 1
        assert purchases[0].store_id == second_store.id
        assert purchases[0].lines[0].quantity == 7

    def test_partially_filled_line_converts_its_remainder(self, store, variant, place_backorder, actor_id):
        order = place_backorder(store, (variant, 5))
        purchase_service.create_purchase(
            {
                "store_id": store.id,
                "status": "completed",
                "items": [{"product_variant_id": variant.id, "quantity": 2, "cost_price_cents": 500}],
            },
            actor_id=actor_id,
        )

        purchases = purchase_service.create_purchase_from_backorders(_line_ids(order), actor_id=actor_id)

        assert purchases[0].lines[0].quantity == 3

    def test_completing_the_raised_purchase_fills_the_lines(self, store, variant, place_backorder, actor_id):
        order = place_backorder(store, (variant, 4))
        purchase = purchase_service.create_purchase_from_backorders(_line_ids(order), actor_id=actor_id)[0]

        for status in ("confirmed", "in_transit", "received", "completed"):
            purchase_service.update_purchase_status(purchase.id, status, actor_id=actor_id)

        line = db.session.get(Order, order.id).lines[0]
        assert line.is_fulfilled
        assert inventory_service.get_inventory(variant.id, store.id).reserved_quantity == 4

    def test_line_cannot_be_converted_twice(self, store, variant, place_backorder, actor_id):
        order = place_backorder(store, (variant, 3))
        purchase_service.create_purchase_from_backorders(_line_ids(order), actor_id=actor_id)

        with pytest.raises(BusinessRuleError) as exc_info:
            purchase_service.create_purchase_from_backorders(_line_ids(order), actor_id=actor_id)

        assert exc_info.value.details["order_line_ids"] == _line_ids(order)
        assert db.session.query(Purchase).count() == 1

    def test_non_backorder_line_rejects_whole_request(
        self, store, variant, other_variant, seed_stock, place_backorder, actor_id
    ):
        seed_stock(other_variant, 2, store)
        waiting = place_backorder(store, (variant, 3))
        sold = order_service.create_order(
            {
                "store_id": store.id,
                "items": [{"product_variant_id": other_variant.id, "quantity": 1,
                           "unit_price_cents": 1000, "is_stocked_sale": True}],
            },
            actor_id=actor_id,
        )

        with pytest.raises(BusinessRuleError) as exc_info:
            purchase_service.create_purchase_from_backorders(_line_ids(waiting, sold), actor_id=actor_id)

        assert exc_info.value.details["order_line_ids"] == _line_ids(sold)
        assert db.session.query(Purchase).count() == 0
        assert db.session.get(Order, waiting.id).lines[0].purchase_line_id is None

    def test_unknown_line(self, store, variant, place_backorder, actor_id):
        order = place_backorder(store, (variant, 3))
        with pytest.raises(NotFoundError) as exc_info:
            purchase_service.create_purchase_from_backorders(_line_ids(order) + [999_999], actor_id=actor_id)
        assert exc_info.value.details["order_line_ids"] == [999_999]

    @pytest.mark.parametrize("order_line_ids", [[], None, "1,2", ["x"]])
    def test_malformed_ids(self, db_session, actor_id, order_line_ids):
        with pytest.raises(ValidationError):
            purchase_service.create_purchase_from_backorders(order_line_ids, actor_id=actor_id)

    def test_actor_required(self, db_session):
        with pytest.raises(ActorRequiredError):
            purchase_service.create_purchase_from_backorders([1], actor_id=None)
