# Overview: Order intake and fulfilment resolution against the inventory ledger.

"""
Order Fulfillment Resolver

Every line is classified once, at intake, into a LineKind:
- STOCKED_SALE lines are deducted from the ordering store's ledger in the same
  DB transaction that creates the order (all lines or none).
- BACKORDER lines wait for a purchase; allocation fills them later.
- CUSTOM lines never touch inventory.

Shortfalls on stocked lines are resolved by a per-variant stock decision:
- "transfer": listed inter-store transfers are executed first, then the line
  is deducted normally.
- "purchase": the line is recorded as a BACKORDER instead; with a
  purchase_quantity a pending purchase is raised for it in the same transaction.
Without a decision the whole order fails with every shortfall listed, unless
force_create is set, in which case short lines become BACKORDER lines.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import BusinessRuleError, IllegalStatusTransitionError, InsufficientStockError, NotFoundError
from ..models import BackorderAllocation, InventoryTransfer, Order, OrderLine, ProductVariant, Refund
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PENDING,
    STOCK_SOURCE_ALLOCATION,
    STOCK_SOURCE_LEDGER,
    LineKind,
)
from ..money import sum_cents
from ..validation import ValidationError, normalize_order_payload
from storeledger.time_utils import utcnow
from .backorder_service import outstanding_backorder_query, release_order_line_allocations
from .concurrency import guarded_flush, lock_for_update, retry_with_backoff
from .document_service import next_document_number
from .inventory_service import _add_inner, _batch_deduct_inner, _collect_shortfalls, require_actor
from .purchase_service import _raise_for_lines
from .store_service import resolve_store_id
from .transfer_service import _create_transfer_inner


def classify_line(line: dict) -> LineKind:
    """
    Classify an intake line.

    No variant -> CUSTOM; stocked flag -> STOCKED_SALE; backorder flag ->
    BACKORDER; neither flag -> CUSTOM. Both flags set is rejected.
    """
    is_stocked = bool(line.get("is_stocked_sale"))
    is_backorder = bool(line.get("is_backorder"))
    if is_stocked and is_backorder:
        raise ValidationError("A line cannot be both a stocked sale and a backorder")
    if line.get("product_variant_id") is None:
        return LineKind.CUSTOM
    if is_stocked:
        return LineKind.STOCKED_SALE
    if is_backorder:
        return LineKind.BACKORDER
    return LineKind.CUSTOM


def _load_variants(items: list[dict]) -> dict[int, ProductVariant]:
    ids = {item["product_variant_id"] for item in items if item["product_variant_id"] is not None}
    if not ids:
        return {}
    variants = db.session.query(ProductVariant).filter(ProductVariant.id.in_(ids)).all()
    found = {v.id: v for v in variants}
    missing = sorted(ids - found.keys())
    if missing:
        raise NotFoundError(
            f"Product variant(s) not found: {', '.join(str(m) for m in missing)}",
            details={"product_variant_ids": missing},
        )
    return found


def _resolve_kinds(
    store_id: int,
    items: list[dict],
    decisions: dict[int, dict],
    force_create: bool,
) -> tuple[list[LineKind], list[dict], dict[int, int]]:
    """
    Decide the final kind of every line.

    Returns (kinds, transfer_plan, purchase_plan); purchase_plan maps a
    demoted variant to the units its `purchase` decision asked for.
    Raises InsufficientStockError listing every shortfall when any short
    variant has neither a decision nor force_create.
    """
    kinds = [classify_line(item) for item in items]
    stocked = [item for item, kind in zip(items, kinds) if kind is LineKind.STOCKED_SALE]
    shortfalls = _collect_shortfalls(store_id, stocked) if stocked else []
    if not shortfalls:
        return kinds, [], {}

    undecided = [s for s in shortfalls if s["product_variant_id"] not in decisions]
    if undecided and not force_create:
        raise InsufficientStockError(
            shortfalls,
            message="Insufficient stock for stocked-sale lines; a stock decision is required",
        )

    demoted = set()
    transfer_plan = []
    purchase_plan = {}
    for shortfall in shortfalls:
        variant_id = shortfall["product_variant_id"]
        decision = decisions.get(variant_id)
        if decision is None or decision["action"] == "purchase":
            demoted.add(variant_id)
            if decision is not None and decision["purchase_quantity"]:
                purchase_plan[variant_id] = decision["purchase_quantity"]
            continue
        for transfer in decision["transfers"]:
            transfer_plan.append({
                "from_store_id": transfer["from_store_id"],
                "product_variant_id": variant_id,
                "quantity": transfer["quantity"],
            })

    kinds = [
        LineKind.BACKORDER
        if kind is LineKind.STOCKED_SALE and item["product_variant_id"] in demoted
        else kind
        for item, kind in zip(items, kinds)
    ]
    return kinds, transfer_plan, purchase_plan


def _compute_totals(order: Order) -> None:
    order.subtotal_cents = sum_cents(line.line_total_cents for line in order.lines)
    grand_total = order.subtotal_cents + order.shipping_fee_cents + order.tax_cents - order.discount_cents
    if grand_total < 0:
        raise ValidationError("Order discount cannot exceed subtotal plus shipping and tax")
    order.grand_total_cents = grand_total


def create_order(payload: dict, *, actor_id, force_create: bool = False) -> Order:
    """
    Create an order and resolve its fulfilment in one DB transaction.

    On InsufficientStockError nothing is persisted: no order, no lines,
    no ledger change.
    """
    actor_id = require_actor(actor_id, "create_order")
    data = normalize_order_payload(payload)
    decisions = {d["product_variant_id"]: d for d in data["stock_decisions"]}

    def _op():
        store_id = resolve_store_id(data["store_id"])
        variants = _load_variants(data["items"])
        kinds, transfer_plan, purchase_plan = _resolve_kinds(store_id, data["items"], decisions, force_create)

        order = Order(
            order_number=next_document_number(store_id=store_id, document_type="ORDER"),
            store_id=store_id,
            status=ORDER_STATUS_PENDING,
            fulfillment_priority=data["fulfillment_priority"],
            expected_delivery_date=data["expected_delivery_date"],
            shipping_fee_cents=data["shipping_fee_cents"],
            tax_cents=data["tax_cents"],
            discount_cents=data["discount_cents"],
            notes=data["notes"],
            created_by=actor_id,
        )
        for item, kind in zip(data["items"], kinds):
            variant = variants.get(item["product_variant_id"])
            order.lines.append(OrderLine(
                product_variant_id=item["product_variant_id"],
                product_name=item["product_name"] or (variant.name if variant else None),
                sku=variant.sku if variant else None,
                kind=kind.value,
                quantity=item["quantity"],
                unit_price_cents=item["unit_price_cents"],
                discount_cents=item["discount_cents"],
            ))
        _compute_totals(order)
        db.session.add(order)
        db.session.flush()

        for planned in transfer_plan:
            _create_transfer_inner(
                from_store_id=planned["from_store_id"],
                to_store_id=store_id,
                product_variant_id=planned["product_variant_id"],
                quantity=planned["quantity"],
                actor_id=actor_id,
                order_id=order.id,
                notes=f"Stock decision for order {order.order_number}",
            )

        raised = None
        if purchase_plan:
            demoted_lines = [
                line
                for line, item in zip(order.lines, data["items"])
                if item["is_stocked_sale"] and line.is_backorder and line.product_variant_id in purchase_plan
            ]
            raised = _raise_for_lines(
                store_id,
                demoted_lines,
                purchase_plan,
                actor_id=actor_id,
                notes=f"Stock decision for order {order.order_number}",
            )

        stocked_lines = [line for line in order.lines if line.line_kind is LineKind.STOCKED_SALE]
        if stocked_lines:
            # still short after the transfers -> InsufficientStockError, whole order rolls back
            _batch_deduct_inner(
                [
                    {"store_id": store_id, "product_variant_id": line.product_variant_id, "quantity": line.quantity}
                    for line in stocked_lines
                ],
                actor_id=actor_id,
                note=f"Order {order.order_number}",
                metadata={"order_id": order.id, "order_number": order.order_number},
            )
            for line in stocked_lines:
                line.add_fulfilled_quantity(line.quantity, source=STOCK_SOURCE_LEDGER)

        db.session.commit()
        current_app.logger.info(
            "Order %s created at store %s by actor %s: %s stocked, %s backorder, %s custom line(s), %s transfer(s)%s",
            order.order_number,
            store_id,
            actor_id,
            kinds.count(LineKind.STOCKED_SALE),
            kinds.count(LineKind.BACKORDER),
            kinds.count(LineKind.CUSTOM),
            len(transfer_plan),
            f", purchase {raised.order_number} raised" if raised else "",
        )
        return order

    return retry_with_backoff(_op)


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _reverse_line_stock(order: Order, line: OrderLine, *, actor_id: int, reason: str) -> int:
    """
    Put back whatever stock a line still holds.

    Ledger-sourced units go back with an `addition`; allocation-sourced units
    have their reservation released. Refunded units were handled by the
    refund and are skipped.
    """
    if line.product_variant_id is None or line.line_kind is LineKind.CUSTOM:
        return 0
    quantity = line.fulfilled_quantity - line.refunded_quantity
    if quantity <= 0:
        return 0

    if line.stock_source == STOCK_SOURCE_LEDGER:
        _add_inner(
            store_id=order.store_id,
            product_variant_id=line.product_variant_id,
            quantity=quantity,
            actor_id=actor_id,
            note=f"Order {order.order_number} {reason}",
            metadata={"order_id": order.id, "order_line_id": line.id, "reason": reason},
        )
    elif line.stock_source == STOCK_SOURCE_ALLOCATION:
        release_order_line_allocations(line, quantity, actor_id=actor_id)
    return quantity


def cancel_order(order_id: int, *, actor_id, reason: str | None = None) -> Order:
    """Cancel an order and return its stock. A cancelled order cannot be cancelled again."""
    actor_id = require_actor(actor_id, "cancel_order")

    def _op():
        order = _lock_order(order_id)
        if order.status == ORDER_STATUS_CANCELLED:
            raise IllegalStatusTransitionError(order.status, ORDER_STATUS_CANCELLED, [])

        returned = sum(
            _reverse_line_stock(order, line, actor_id=actor_id, reason="cancelled")
            for line in order.lines
        )
        order.status = ORDER_STATUS_CANCELLED
        order.cancelled_at = utcnow()
        if reason:
            order.notes = f"{order.notes}\n{reason}" if order.notes else reason
        guarded_flush(order)
        db.session.commit()
        current_app.logger.info(
            "Order %s cancelled by actor %s, %s unit(s) returned", order.order_number, actor_id, returned
        )
        return order

    return retry_with_backoff(_op)


def delete_order(order_id: int, *, actor_id) -> None:
    """
    Remove an order and its lines after returning their stock.

    Allocation history keeps its purchase side; the order reference is
    cleared. Orders with refunds cannot be deleted.
    """
    actor_id = require_actor(actor_id, "delete_order")

    def _op():
        order = _lock_order(order_id)
        if db.session.query(Refund.id).filter_by(order_id=order.id).first() is not None:
            raise BusinessRuleError(
                f"Order {order.order_number} has refunds and cannot be deleted",
                details={"order_id": order.id},
            )

        if order.status != ORDER_STATUS_CANCELLED:
            for line in order.lines:
                _reverse_line_stock(order, line, actor_id=actor_id, reason="deleted")

        line_ids = [line.id for line in order.lines]
        if line_ids:
            db.session.query(BackorderAllocation).filter(
                BackorderAllocation.order_line_id.in_(line_ids)
            ).update({BackorderAllocation.order_line_id: None}, synchronize_session=False)
        db.session.query(InventoryTransfer).filter_by(order_id=order.id).update(
            {InventoryTransfer.order_id: None}, synchronize_session=False
        )

        order_number = order.order_number
        db.session.delete(order)
        db.session.commit()
        current_app.logger.info("Order %s deleted by actor %s", order_number, actor_id)

    retry_with_backoff(_op)


def list_backorder_lines(product_variant_id: int | None = None, store_id: int | None = None) -> list[OrderLine]:
    """Outstanding backorder lines, in the order allocation would serve them."""
    return outstanding_backorder_query(product_variant_id, store_id).all()
