# Overview: Purchase intake and the purchase status machine; completion drives backorder allocation.

from __future__ import annotations

from collections import defaultdict

from flask import current_app

from ..extensions import db
from ..errors import BusinessRuleError, IllegalStatusTransitionError, NotFoundError
from ..models import OrderLine, ProductVariant, Purchase, PurchaseLine, PurchaseStatusHistory
from ..models.orders import ORDER_STATUS_CANCELLED, LineKind
from ..money import allocate, sum_cents
from ..validation import ValidationError, coerce_int, normalize_purchase_payload
from storeledger.time_utils import utcnow
from .backorder_service import allocate_purchase_line, reverse_purchase_line_allocation
from .concurrency import guarded_flush, lock_for_update, retry_with_backoff
from .document_service import next_document_number
from .inventory_service import _ensure_variant, require_actor
from .store_service import resolve_store_id


PURCHASE_STATUS_PENDING = "pending"
PURCHASE_STATUS_CONFIRMED = "confirmed"
PURCHASE_STATUS_IN_TRANSIT = "in_transit"
PURCHASE_STATUS_PARTIALLY_RECEIVED = "partially_received"
PURCHASE_STATUS_RECEIVED = "received"
PURCHASE_STATUS_COMPLETED = "completed"
PURCHASE_STATUS_CANCELLED = "cancelled"

# current status -> statuses it may move to
PURCHASE_TRANSITIONS = {
    PURCHASE_STATUS_PENDING: frozenset({PURCHASE_STATUS_CONFIRMED, PURCHASE_STATUS_CANCELLED}),
    PURCHASE_STATUS_CONFIRMED: frozenset({PURCHASE_STATUS_IN_TRANSIT, PURCHASE_STATUS_CANCELLED}),
    PURCHASE_STATUS_IN_TRANSIT: frozenset({PURCHASE_STATUS_RECEIVED, PURCHASE_STATUS_PARTIALLY_RECEIVED}),
    PURCHASE_STATUS_PARTIALLY_RECEIVED: frozenset({PURCHASE_STATUS_RECEIVED}),
    PURCHASE_STATUS_RECEIVED: frozenset({PURCHASE_STATUS_COMPLETED}),
    PURCHASE_STATUS_COMPLETED: frozenset(),
    PURCHASE_STATUS_CANCELLED: frozenset(),
}

PURCHASE_STATUSES = tuple(PURCHASE_TRANSITIONS)

# statuses a purchase may be created in; partially_received needs per-line counts
INITIAL_STATUSES = (
    PURCHASE_STATUS_PENDING,
    PURCHASE_STATUS_CONFIRMED,
    PURCHASE_STATUS_IN_TRANSIT,
    PURCHASE_STATUS_RECEIVED,
    PURCHASE_STATUS_COMPLETED,
)


def _transition_table() -> dict:
    """PURCHASE_TRANSITIONS, or the table configured for this app."""
    return current_app.config.get("PURCHASE_TRANSITIONS") or PURCHASE_TRANSITIONS


def allowed_transitions(status: str) -> list[str]:
    return sorted(_transition_table().get(status, ()))


def _record_history(purchase: Purchase, from_status: str | None, to_status: str, actor_id: int, note: str | None):
    purchase.status_history.append(PurchaseStatusHistory(
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        note=note,
    ))


def _complete(purchase: Purchase, *, actor_id: int) -> int:
    """Credit every line's received quantity and allocate it. Returns units credited."""
    credited = 0
    for line in purchase.lines:
        quantity = line.credited_quantity
        if quantity > 0:
            allocate_purchase_line(line, quantity, actor_id=actor_id)
            credited += quantity
    return credited


def _create_purchase_inner(
    *,
    store_id: int,
    items: list[dict],
    shipping_cost_cents: int,
    status: str,
    notes: str | None,
    actor_id: int,
) -> Purchase:
    """Build and flush a purchase inside the caller's transaction; never commits."""
    line_costs = [item["quantity"] * item["cost_price_cents"] for item in items]
    shipping_shares = allocate(shipping_cost_cents, line_costs)

    purchase = Purchase(
        order_number=next_document_number(store_id=store_id, document_type="PURCHASE"),
        store_id=store_id,
        status=status,
        shipping_cost_cents=shipping_cost_cents,
        total_amount_cents=sum_cents(line_costs) + shipping_cost_cents,
        notes=notes,
        created_by=actor_id,
        completed_at=utcnow() if status == PURCHASE_STATUS_COMPLETED else None,
    )
    for item, share in zip(items, shipping_shares):
        purchase.lines.append(PurchaseLine(
            product_variant_id=item["product_variant_id"],
            quantity=item["quantity"],
            cost_price_cents=item["cost_price_cents"],
            allocated_shipping_cost_cents=share,
        ))
    _record_history(purchase, None, status, actor_id, "created")
    db.session.add(purchase)
    db.session.flush()

    if status == PURCHASE_STATUS_COMPLETED:
        _complete(purchase, actor_id=actor_id)
    return purchase


def create_purchase(payload: dict, *, actor_id) -> Purchase:
    """
    Record a purchase.

    Shipping cost is spread over lines in proportion to quantity x cost;
    total = sum(quantity x cost) + shipping. A purchase created directly as
    `completed` credits and allocates its stock immediately.
    """
    actor_id = require_actor(actor_id, "create_purchase")
    data = normalize_purchase_payload(payload)
    status = data["status"]
    if status not in INITIAL_STATUSES:
        raise ValidationError(f"A purchase cannot be created with status {status!r}")

    def _op():
        store_id = resolve_store_id(data["store_id"])
        for item in data["items"]:
            _ensure_variant(item["product_variant_id"])

        purchase = _create_purchase_inner(
            store_id=store_id,
            items=data["items"],
            shipping_cost_cents=data["shipping_cost_cents"],
            status=status,
            notes=data["notes"],
            actor_id=actor_id,
        )
        db.session.commit()
        current_app.logger.info(
            "Purchase %s created at store %s (%s line(s), status %s, total %s cents)",
            purchase.order_number,
            store_id,
            len(purchase.lines),
            status,
            purchase.total_amount_cents,
        )
        return purchase

    return retry_with_backoff(_op)


def get_purchase(purchase_id: int) -> Purchase:
    purchase = db.session.get(Purchase, purchase_id)
    if purchase is None:
        raise NotFoundError(f"Purchase {purchase_id} not found", details={"purchase_id": purchase_id})
    return purchase


def _apply_received_quantities(purchase: Purchase, received_quantities: dict) -> None:
    """received_quantities: {purchase_line_id: quantity}; 0 <= quantity <= ordered."""
    lines = {line.id: line for line in purchase.lines}
    for raw_line_id, raw_qty in received_quantities.items():
        line_id = coerce_int("purchase_line_id", raw_line_id)
        line = lines.get(line_id)
        if line is None:
            raise ValidationError(
                f"Purchase line {line_id} does not belong to purchase {purchase.order_number}"
            )
        quantity = coerce_int("received_quantity", raw_qty)
        if quantity < 0 or quantity > line.quantity:
            raise ValidationError(
                f"received_quantity for line {line_id} must be between 0 and {line.quantity}"
            )
        line.received_quantity = quantity


def _settle_received_counts(purchase: Purchase) -> None:
    """
    Fix every line's count on entering `received`.

    Nothing counted yet means everything arrived: each line is stamped in
    full. Once counting has started, every line needs a count.
    """
    uncounted = [line for line in purchase.lines if line.received_quantity is None]
    if len(uncounted) == len(purchase.lines):
        for line in uncounted:
            line.received_quantity = line.quantity
        return
    if uncounted:
        raise ValidationError(
            f"received_quantities missing for purchase line(s): "
            f"{', '.join(str(line.id) for line in uncounted)}"
        )


def update_purchase_status(
    purchase_id: int,
    new_status: str,
    *,
    actor_id,
    received_quantities: dict | None = None,
    note: str | None = None,
) -> Purchase:
    """
    Move a purchase along the transition table.

    Entering `completed` credits the received stock and allocates it to
    backorders; leaving `completed` (only possible with a configured table
    that allows it) reverses that. Two concurrent completions collide on the
    purchase version and the retry is rejected by the table.
    """
    actor_id = require_actor(actor_id, "update_purchase_status")
    if new_status not in PURCHASE_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(PURCHASE_STATUSES)}"
        )
    if new_status == PURCHASE_STATUS_PARTIALLY_RECEIVED and not received_quantities:
        raise ValidationError("received_quantities is required for partially_received")

    def _op():
        purchase = lock_for_update(db.session.query(Purchase).filter_by(id=purchase_id)).first()
        if purchase is None:
            raise NotFoundError(f"Purchase {purchase_id} not found", details={"purchase_id": purchase_id})

        current = purchase.status
        if new_status not in _transition_table().get(current, ()):
            raise IllegalStatusTransitionError(current, new_status, allowed_transitions(current))

        # claim the transition first so a concurrent writer conflicts before any ledger work
        purchase.status = new_status
        purchase.completed_at = utcnow() if new_status == PURCHASE_STATUS_COMPLETED else None
        guarded_flush(purchase)

        if current == PURCHASE_STATUS_COMPLETED:
            for line in purchase.lines:
                reverse_purchase_line_allocation(line, actor_id=actor_id)

        if received_quantities:
            _apply_received_quantities(purchase, received_quantities)
        if new_status == PURCHASE_STATUS_RECEIVED:
            _settle_received_counts(purchase)

        credited = 0
        if new_status == PURCHASE_STATUS_COMPLETED:
            credited = _complete(purchase, actor_id=actor_id)

        _record_history(purchase, current, new_status, actor_id, note)
        db.session.flush()
        db.session.commit()
        current_app.logger.info(
            "Purchase %s: %s -> %s by actor %s%s",
            purchase.order_number,
            current,
            new_status,
            actor_id,
            f", {credited} unit(s) credited" if credited else "",
        )
        return purchase

    return retry_with_backoff(_op)


def _convertible(line: OrderLine) -> bool:
    return (
        line.line_kind is LineKind.BACKORDER
        and line.remaining_quantity > 0
        and line.purchase_line_id is None
        and line.order.status != ORDER_STATUS_CANCELLED
    )


def _raise_for_lines(store_id: int, lines: list[OrderLine], quantities: dict[int, int], *, actor_id: int, notes: str) -> Purchase:
    """
    Raise one pending purchase at `store_id` covering `quantities`
    ({variant_id: units}) and link `lines` to the matching purchase lines.
    Runs inside the caller's transaction.
    """
    variants = {
        v.id: v
        for v in db.session.query(ProductVariant).filter(ProductVariant.id.in_(quantities)).all()
    }
    purchase = _create_purchase_inner(
        store_id=store_id,
        items=[
            {
                "product_variant_id": variant_id,
                "quantity": quantity,
                "cost_price_cents": variants[variant_id].cost_price_cents,
            }
            for variant_id, quantity in sorted(quantities.items())
        ],
        shipping_cost_cents=0,
        status=PURCHASE_STATUS_PENDING,
        notes=notes,
        actor_id=actor_id,
    )
    by_variant = {pline.product_variant_id: pline for pline in purchase.lines}
    for line in lines:
        line.purchase_line_id = by_variant[line.product_variant_id].id
    guarded_flush(*lines)
    return purchase


def create_purchase_from_backorders(order_line_ids, store_id: int | None = None, *, actor_id) -> list[Purchase]:
    """
    Turn waiting backorder lines into pending purchases.

    Lines are grouped by receiving store (store_id, else each order's store)
    and by variant; each store gets one purchase with one line per variant
    for the summed outstanding quantity at the variant's cost price. The
    order lines are linked to their purchase line so they cannot be
    converted twice.
    """
    actor_id = require_actor(actor_id, "create_purchase_from_backorders")
    if not isinstance(order_line_ids, list) or not order_line_ids:
        raise ValidationError("order_line_ids must be a non-empty list")
    ids = list(dict.fromkeys(
        coerce_int(f"order_line_ids[{i}]", raw) for i, raw in enumerate(order_line_ids)
    ))

    def _op():
        target_store_id = resolve_store_id(store_id) if store_id is not None else None
        lines = lock_for_update(
            db.session.query(OrderLine).filter(OrderLine.id.in_(ids)).order_by(OrderLine.id)
        ).all()
        missing = sorted(set(ids) - {line.id for line in lines})
        if missing:
            raise NotFoundError(
                f"Order line(s) not found: {', '.join(str(m) for m in missing)}",
                details={"order_line_ids": missing},
            )
        rejected = [line.id for line in lines if not _convertible(line)]
        if rejected:
            raise BusinessRuleError(
                "Only outstanding backorder lines without a purchase can be converted",
                details={"order_line_ids": rejected},
            )

        by_store: dict[int, list[OrderLine]] = defaultdict(list)
        for line in lines:
            by_store[target_store_id or line.order.store_id].append(line)

        purchases = []
        for sid in sorted(by_store):
            store_lines = by_store[sid]
            quantities: dict[int, int] = defaultdict(int)
            for line in store_lines:
                quantities[line.product_variant_id] += line.remaining_quantity
            purchases.append(_raise_for_lines(
                sid,
                store_lines,
                dict(quantities),
                actor_id=actor_id,
                notes=f"Raised from {len(store_lines)} backorder line(s)",
            ))

        db.session.commit()
        current_app.logger.info(
            "Backorder conversion by actor %s: %s line(s) -> %s",
            actor_id,
            len(lines),
            ", ".join(p.order_number for p in purchases),
        )
        return purchases

    return retry_with_backoff(_op)
