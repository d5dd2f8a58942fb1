# Overview: Refunds against order lines, bounded by each line's remaining refundable quantity.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import IllegalStatusTransitionError, NotFoundError, RefundQuantityError
from ..models import Order, OrderLine, Refund, RefundLine
from ..models.orders import ORDER_STATUS_CANCELLED, STOCK_SOURCE_ALLOCATION, STOCK_SOURCE_LEDGER, LineKind
from ..validation import ValidationError, coerce_int
from .backorder_service import release_order_line_allocations
from .concurrency import guarded_flush, lock_for_update, retry_with_backoff
from .document_service import next_document_number
from .inventory_service import _add_inner, require_actor


def refundable_quantity(line: OrderLine) -> int:
    """
    Units of a line that can still be refunded.

    Inventory lines refund delivered goods, so only fulfilled units count;
    custom lines refund against their full quantity.
    """
    if line.line_kind is LineKind.CUSTOM:
        return line.quantity - line.refunded_quantity
    return line.fulfilled_quantity - line.refunded_quantity


def _line_refund_cents(line: OrderLine, quantity: int) -> int:
    """Pro-rata share of the line total; the last refunded unit takes the remainder."""
    if line.refunded_quantity + quantity == line.quantity:
        already = (
            db.session.query(db.func.coalesce(db.func.sum(RefundLine.refund_cents), 0))
            .filter(RefundLine.order_line_id == line.id)
            .scalar()
        )
        return line.line_total_cents - int(already)
    return line.line_total_cents * quantity // line.quantity


def _restock_line(order: Order, line: OrderLine, quantity: int, *, restock: bool, actor_id: int, refund: Refund) -> int:
    """Apply the ledger side of a refund. Returns the units restocked."""
    if line.product_variant_id is None or line.line_kind is LineKind.CUSTOM:
        return 0
    note = f"Refund {refund.refund_number} for order {order.order_number}"
    if line.stock_source == STOCK_SOURCE_LEDGER:
        if not restock:
            return 0
        _add_inner(
            store_id=order.store_id,
            product_variant_id=line.product_variant_id,
            quantity=quantity,
            actor_id=actor_id,
            note=note,
            metadata={"refund_id": refund.id, "order_id": order.id, "order_line_id": line.id},
        )
        return quantity
    if line.stock_source == STOCK_SOURCE_ALLOCATION:
        # reserved units are either freed (restock) or leave the store (write-off)
        release_order_line_allocations(line, quantity, actor_id=actor_id, write_off=not restock, note=note)
        return quantity if restock else 0
    return 0


def create_refund(
    order_id: int,
    items: list[dict],
    *,
    actor_id,
    reason: str | None = None,
    restock: bool = True,
) -> Refund:
    """
    Refund quantities of an order's lines.

    items: [{"order_line_id": int, "quantity": int}]
    Each quantity must be > 0 and within the line's refundable quantity,
    otherwise RefundQuantityError is raised and nothing is written.
    """
    actor_id = require_actor(actor_id, "create_refund")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    requested = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        requested.append((
            coerce_int(f"items[{index}].order_line_id", item.get("order_line_id")),
            coerce_int(f"items[{index}].quantity", item.get("quantity")),
        ))

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        if order.status == ORDER_STATUS_CANCELLED:
            raise IllegalStatusTransitionError(order.status, "refunded", [])

        lines = {line.id: line for line in order.lines}
        pending: dict[int, int] = {}
        for line_id, quantity in requested:
            line = lines.get(line_id)
            if line is None:
                raise NotFoundError(
                    f"Order line {line_id} does not belong to order {order.order_number}",
                    details={"order_id": order.id, "order_line_id": line_id},
                )
            if quantity <= 0:
                raise RefundQuantityError(
                    "Refund quantity must be greater than 0",
                    details={"order_line_id": line_id, "quantity": quantity},
                )
            pending[line_id] = pending.get(line_id, 0) + quantity
            available = refundable_quantity(line)
            if pending[line_id] > available:
                raise RefundQuantityError(
                    f"Refund quantity {pending[line_id]} exceeds refundable quantity {available} "
                    f"for order line {line_id}",
                    details={"order_line_id": line_id, "requested": pending[line_id], "refundable": available},
                )

        refund = Refund(
            refund_number=next_document_number(store_id=order.store_id, document_type="REFUND"),
            order_id=order.id,
            reason=reason,
            restock=restock,
            created_by=actor_id,
        )
        db.session.add(refund)
        db.session.flush()

        total = 0
        for line_id, quantity in pending.items():
            line = lines[line_id]
            refund_cents = _line_refund_cents(line, quantity)
            restocked = _restock_line(order, line, quantity, restock=restock, actor_id=actor_id, refund=refund)
            refund.lines.append(RefundLine(
                order_line_id=line.id,
                quantity=quantity,
                refund_cents=refund_cents,
                restocked_quantity=restocked,
            ))
            line.refunded_quantity += quantity
            total += refund_cents
        refund.total_refund_cents = total

        guarded_flush(*lines.values())
        db.session.commit()
        current_app.logger.info(
            "Refund %s for order %s: %s line(s), %s cents, restock=%s, actor %s",
            refund.refund_number,
            order.order_number,
            len(pending),
            total,
            restock,
            actor_id,
        )
        return refund

    return retry_with_backoff(_op)


def list_refunds(order_id: int) -> list[Refund]:
    return db.session.query(Refund).filter_by(order_id=order_id).order_by(Refund.id).all()
