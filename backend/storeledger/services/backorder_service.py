# Overview: Allocation of received purchase stock to outstanding backorder lines, plus previews and reports.

"""
Backorder Allocation Rules (authoritative)

- Received units are credited to the ledger first (one `addition` per
  purchase line), then handed to outstanding backorder lines.
- Outstanding: kind = backorder, same variant, fulfilled_quantity < quantity,
  order not cancelled, and at the receiving store unless
  BACKORDER_ALLOCATION_SCOPE = "any".
- Order of service: tier (urgent, high, normal, low), then order created_at,
  then order line id. Equal tiers are first-come first-served.
- Awarded units are reserved on the receiving store's record instead of being
  deducted a second time; units nobody needs stay as free stock.
- Each award writes one BackorderAllocation row. Releasing (order cancel,
  refund) and reversing (purchase leaves completed) work from those rows.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

from flask import current_app
from sqlalchemy import case

from ..extensions import db
from ..models import BackorderAllocation, Order, OrderLine, PurchaseLine
from ..models.inventory import TX_ADDITION, TX_ADJUSTMENT, TX_REDUCTION
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    PRIORITY_TIERS,
    STOCK_SOURCE_ALLOCATION,
    LineKind,
)
from ..validation import ValidationError
from storeledger.time_utils import utcnow, to_utc_z
from .concurrency import guarded_flush, lock_for_update
from .inventory_service import _add_inner, _deduct_inner, _release_inner, _reserve_inner
from .store_service import resolve_store_id


ALLOCATION_SCOPES = ("store", "any")

# (bucket name, max age in days); the last bucket is open-ended
WAITING_BUCKETS = (
    ("1_week", 7),
    ("1_month", 30),
    ("3_months", 90),
    ("over_3_months", None),
)

_TIER_RANK = case(
    {tier: rank for rank, tier in enumerate(PRIORITY_TIERS)},
    value=Order.fulfillment_priority,
    else_=PRIORITY_TIERS.index("normal"),
)


def _allocation_scope() -> str:
    scope = current_app.config.get("BACKORDER_ALLOCATION_SCOPE", "store")
    if scope not in ALLOCATION_SCOPES:
        raise ValueError(
            f"BACKORDER_ALLOCATION_SCOPE must be one of {ALLOCATION_SCOPES}, got {scope!r}"
        )
    return scope


def outstanding_backorder_query(product_variant_id: int | None = None, store_id: int | None = None):
    """Outstanding backorder lines in allocation order."""
    query = (
        db.session.query(OrderLine)
        .join(Order, OrderLine.order_id == Order.id)
        .filter(
            OrderLine.kind == LineKind.BACKORDER.value,
            OrderLine.fulfilled_quantity < OrderLine.quantity,
            Order.status != ORDER_STATUS_CANCELLED,
        )
    )
    if product_variant_id is not None:
        query = query.filter(OrderLine.product_variant_id == product_variant_id)
    if store_id is not None:
        query = query.filter(Order.store_id == store_id)
    return query.order_by(_TIER_RANK, Order.created_at.asc(), OrderLine.id.asc())


def _candidate_lines(product_variant_id: int, store_id: int, *, lock: bool = False) -> list[OrderLine]:
    scope_store = store_id if _allocation_scope() == "store" else None
    query = outstanding_backorder_query(product_variant_id, scope_store)
    if lock:
        query = lock_for_update(query)
    return query.all()


def allocate_purchase_line(purchase_line: PurchaseLine, quantity: int, *, actor_id: int) -> list[BackorderAllocation]:
    """
    Credit `quantity` received units of a purchase line and award them to
    waiting backorder lines.

    Runs inside the caller's transaction and never commits; the purchase
    completion commits once for all its lines.
    """
    if quantity <= 0:
        return []

    purchase = purchase_line.purchase
    store_id = purchase.store_id
    variant_id = purchase_line.product_variant_id

    _add_inner(
        store_id=store_id,
        product_variant_id=variant_id,
        quantity=quantity,
        actor_id=actor_id,
        note=f"Purchase {purchase.order_number} received",
        metadata={
            "purchase_id": purchase.id,
            "purchase_line_id": purchase_line.id,
            "purchase_number": purchase.order_number,
        },
        tx_type=TX_ADDITION,
    )

    remaining = quantity
    awards = []
    touched = []
    for line in _candidate_lines(variant_id, store_id, lock=True):
        if remaining == 0:
            break
        take = min(line.remaining_quantity, remaining)
        line.add_fulfilled_quantity(take, source=STOCK_SOURCE_ALLOCATION)
        award = BackorderAllocation(
            purchase_line=purchase_line,
            order_line_id=line.id,
            quantity=take,
            priority_tier=line.order.fulfillment_priority,
            allocated_by=actor_id,
        )
        db.session.add(award)
        awards.append(award)
        touched.append(line)
        remaining -= take

    allocated = quantity - remaining
    if allocated:
        _reserve_inner(store_id=store_id, product_variant_id=variant_id, quantity=allocated)
    guarded_flush(*touched)

    current_app.logger.info(
        "Purchase %s line %s: received %s of variant %s, allocated %s to %s backorder line(s), %s left as stock",
        purchase.order_number,
        purchase_line.id,
        quantity,
        variant_id,
        allocated,
        len(awards),
        remaining,
    )
    return awards


def release_order_line_allocations(
    order_line: OrderLine,
    quantity: int,
    *,
    actor_id: int,
    write_off: bool = False,
    note: str | None = None,
) -> int:
    """
    Hand `quantity` allocated units of an order line back to free stock.

    Newest awards are released first. With write_off the units also leave
    the ledger (a `reduction`), e.g. refunded goods that are not restocked.
    Returns the number of units released.
    """
    remaining = quantity
    awards = (
        db.session.query(BackorderAllocation)
        .filter(
            BackorderAllocation.order_line_id == order_line.id,
            BackorderAllocation.reversed_at.is_(None),
        )
        .order_by(BackorderAllocation.id.desc())
        .all()
    )
    for award in awards:
        if remaining == 0:
            break
        take = min(award.open_quantity, remaining)
        if take <= 0:
            continue
        store_id = award.purchase_line.purchase.store_id
        _release_inner(store_id=store_id, product_variant_id=order_line.product_variant_id, quantity=take)
        if write_off:
            _deduct_inner(
                store_id=store_id,
                product_variant_id=order_line.product_variant_id,
                quantity=take,
                actor_id=actor_id,
                note=note,
                metadata={"order_line_id": order_line.id, "allocation_id": award.id},
                tx_type=TX_REDUCTION,
            )
        award.released_quantity += take
        remaining -= take

    if remaining:
        raise ValueError(
            f"order line {order_line.id}: {remaining} allocated unit(s) have no open allocation to release"
        )
    db.session.flush()
    return quantity


def reverse_purchase_line_allocation(purchase_line: PurchaseLine, *, actor_id: int) -> int:
    """
    Undo what completing a purchase did for one line.

    Open awards are taken back from their order lines (fulfilment rolls back,
    the reservation is released), then the credited units are removed with an
    `adjustment`. Fails with InsufficientStockError when that stock has
    already been consumed. Returns the quantity removed from the ledger.
    """
    purchase = purchase_line.purchase
    store_id = purchase.store_id
    variant_id = purchase_line.product_variant_id

    touched = []
    for award in purchase_line.allocations:
        open_qty = award.open_quantity
        if award.reversed_at is not None:
            continue
        if open_qty and award.order_line is not None:
            line = award.order_line
            line.fulfilled_quantity -= open_qty
            line.is_fulfilled = False
            line.fulfilled_at = None
            if line.fulfilled_quantity == 0:
                line.stock_source = None
            touched.append(line)
            _release_inner(store_id=store_id, product_variant_id=variant_id, quantity=open_qty)
        award.reversed_at = utcnow()
    guarded_flush(*touched)

    credited = purchase_line.credited_quantity
    if credited > 0:
        _deduct_inner(
            store_id=store_id,
            product_variant_id=variant_id,
            quantity=credited,
            actor_id=actor_id,
            note=f"Purchase {purchase.order_number} reverted",
            metadata={
                "purchase_id": purchase.id,
                "purchase_line_id": purchase_line.id,
                "purchase_number": purchase.order_number,
            },
            tx_type=TX_ADJUSTMENT,
        )

    current_app.logger.info(
        "Purchase %s line %s reversed: %s unit(s) removed, %s order line(s) reopened",
        purchase.order_number,
        purchase_line.id,
        credited,
        len(touched),
    )
    return credited


def simulate_allocation(product_variant_id: int, available_quantity: int, store_id: int | None = None) -> dict:
    """Preview how `available_quantity` units would be allocated. Writes nothing."""
    if available_quantity < 0:
        raise ValueError("available_quantity must be >= 0")
    store_id = resolve_store_id(store_id)

    remaining = available_quantity
    plan = []
    for line in _candidate_lines(product_variant_id, store_id):
        take = min(line.remaining_quantity, remaining)
        plan.append({
            "order_id": line.order_id,
            "order_number": line.order.order_number,
            "order_line_id": line.id,
            "store_id": line.order.store_id,
            "priority": line.order.fulfillment_priority,
            "order_created_at": to_utc_z(line.order.created_at),
            "outstanding": line.remaining_quantity,
            "allocated": take,
            "fully_satisfied": take == line.remaining_quantity,
        })
        remaining -= take

    return {
        "product_variant_id": product_variant_id,
        "store_id": store_id,
        "available_quantity": available_quantity,
        "allocated_quantity": available_quantity - remaining,
        "remaining_quantity": remaining,
        "allocations": plan,
    }


def _waiting_bucket(age: timedelta) -> str:
    for name, max_days in WAITING_BUCKETS:
        if max_days is None or age <= timedelta(days=max_days):
            return name
    return WAITING_BUCKETS[-1][0]


def get_allocation_report(product_variant_id: int, store_id: int | None = None) -> dict:
    """Pending backorder demand for a variant, by priority tier and waiting time."""
    lines = outstanding_backorder_query(product_variant_id, store_id).all()
    now = utcnow()

    by_priority = {tier: {"lines": 0, "quantity": 0} for tier in PRIORITY_TIERS}
    by_waiting = {name: {"lines": 0, "quantity": 0} for name, _ in WAITING_BUCKETS}
    for line in lines:
        tier = line.order.fulfillment_priority
        bucket = _waiting_bucket(now - line.order.created_at)
        for group in (by_priority.setdefault(tier, {"lines": 0, "quantity": 0}), by_waiting[bucket]):
            group["lines"] += 1
            group["quantity"] += line.remaining_quantity

    history_query = (
        db.session.query(BackorderAllocation)
        .join(PurchaseLine, BackorderAllocation.purchase_line_id == PurchaseLine.id)
        .filter(PurchaseLine.product_variant_id == product_variant_id)
    )
    recent = history_query.order_by(BackorderAllocation.id.desc()).limit(20).all()

    return {
        "product_variant_id": product_variant_id,
        "store_id": store_id,
        "pending_lines": len(lines),
        "pending_quantity": sum(line.remaining_quantity for line in lines),
        "by_priority": by_priority,
        "by_waiting_time": by_waiting,
        "recent_allocations": [a.to_dict() for a in recent],
    }


def get_backorder_summary(
    store_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[dict]:
    """
    Outstanding backorder demand not yet raised as a purchase, one entry per
    variant. Feeds create_purchase_from_backorders.
    """
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must be on or before date_to")

    query = outstanding_backorder_query(store_id=store_id).filter(OrderLine.purchase_line_id.is_(None))
    if date_from is not None:
        query = query.filter(Order.created_at >= datetime.combine(date_from, time.min))
    if date_to is not None:
        query = query.filter(Order.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    summary: dict[int, dict] = {}
    for line in query.all():
        entry = summary.get(line.product_variant_id)
        if entry is None:
            entry = summary[line.product_variant_id] = {
                "product_variant_id": line.product_variant_id,
                "sku": line.sku,
                "name": line.product_name,
                "total_quantity": 0,
                "order_ids": set(),
                "order_line_ids": [],
                "oldest_order_at": line.order.created_at,
            }
        entry["total_quantity"] += line.remaining_quantity
        entry["order_ids"].add(line.order_id)
        entry["order_line_ids"].append(line.id)
        entry["oldest_order_at"] = min(entry["oldest_order_at"], line.order.created_at)

    result = []
    for variant_id in sorted(summary):
        entry = summary[variant_id]
        order_ids = entry.pop("order_ids")
        entry["order_count"] = len(order_ids)
        entry["oldest_order_at"] = to_utc_z(entry["oldest_order_at"])
        result.append(entry)
    return result
