# Overview: Service-layer operations for the inventory ledger; encapsulates business logic and database work.

# backend/storeledger/services/inventory_service.py

"""
Inventory Ledger Invariants & Time Semantics (authoritative)

Ledger model:
- InventoryRecord holds the authoritative quantity per (store, variant).
- Every mutation appends exactly one InventoryTransaction with
  before_quantity, signed quantity and after_quantity (after = before + quantity).
- Records are created lazily by the first addition for a pair, starting at
  that addition's quantity with version 0.

Business invariants:
- quantity never goes negative and never drops below reserved_quantity.
- Availability checks use available_quantity = quantity - reserved_quantity.
- A failed deduction leaves quantity, reserved_quantity and version untouched.
- Batch operations run in one DB transaction: all lines commit or none do.

Concurrency:
- Mutations lock the row where supported and are guarded by the record version.
- A version conflict rolls back and re-runs the whole operation, so the
  sufficiency check is repeated against fresh state (never a blind decrement).

Identity:
- Every public ledger call requires an actor id; None fails before any
  storage access.

Time:
- All internal datetimes are UTC-naive.
- Time series are end-of-day quantities reconstructed from the current
  quantity by replaying transactions backward.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, time, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ActorRequiredError, InsufficientStockError, NotFoundError, VersionConflictError
from ..models import InventoryRecord, InventoryTransaction, ProductVariant
from ..models.inventory import TX_ADDITION, TX_ADJUSTMENT, TX_REDUCTION
from ..validation import ValidationError
from storeledger.time_utils import utcnow
from .concurrency import guarded_flush, lock_for_update, retry_with_backoff
from .store_service import resolve_store_id


def require_actor(actor_id, operation: str) -> int:
    """Fail fast when no authenticated actor is supplied."""
    if actor_id is None:
        raise ActorRequiredError(operation)
    if isinstance(actor_id, bool) or not isinstance(actor_id, int):
        raise ValidationError("actor_id must be an integer")
    return actor_id


def _require_positive(quantity, field: str = "quantity") -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"{field} must be an integer")
    if quantity <= 0:
        raise ValidationError(f"{field} must be > 0")
    return quantity


def _ensure_variant(product_variant_id: int) -> ProductVariant:
    variant = db.session.get(ProductVariant, product_variant_id)
    if variant is None:
        raise NotFoundError(
            f"Product variant {product_variant_id} not found",
            details={"product_variant_id": product_variant_id},
        )
    return variant


def _get_record(store_id: int, product_variant_id: int, *, lock: bool = False) -> InventoryRecord | None:
    query = db.session.query(InventoryRecord).filter_by(
        store_id=store_id,
        product_variant_id=product_variant_id,
    )
    if lock:
        query = lock_for_update(query)
    return query.first()


def _shortfall(store_id: int, product_variant_id: int, requested: int, available: int) -> dict:
    return {
        "product_variant_id": product_variant_id,
        "store_id": store_id,
        "requested": requested,
        "available": available,
    }


def _append_transaction(
    record: InventoryRecord,
    *,
    tx_type: str,
    quantity: int,
    before_quantity: int,
    actor_id: int,
    note: str | None,
    metadata: dict | None,
) -> InventoryTransaction:
    tx = InventoryTransaction(
        record=record,
        type=tx_type,
        quantity=quantity,
        before_quantity=before_quantity,
        after_quantity=before_quantity + quantity,
        actor_id=actor_id,
        note=note,
        meta=dict(metadata) if metadata else None,
        occurred_at=utcnow(),
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def _create_record_inner(
    *,
    store_id: int,
    product_variant_id: int,
    quantity: int,
) -> InventoryRecord:
    """
    INSERT a new record at `quantity` (version 0).

    A concurrent writer creating the same pair first surfaces as
    VersionConflictError, so the retry loop re-runs the operation and finds
    the existing row.
    """
    record = InventoryRecord(
        store_id=store_id,
        product_variant_id=product_variant_id,
        quantity=quantity,
        reserved_quantity=0,
    )
    db.session.add(record)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise VersionConflictError(
            f"Inventory record for store {store_id} / variant {product_variant_id} was created concurrently",
            details={"store_id": store_id, "product_variant_id": product_variant_id},
        ) from exc
    return record


def _add_inner(
    *,
    store_id: int,
    product_variant_id: int,
    quantity: int,
    actor_id: int,
    note: str | None = None,
    metadata: dict | None = None,
    tx_type: str = TX_ADDITION,
) -> InventoryTransaction:
    """Core increment without retry or commit; creates the record if absent."""
    record = _get_record(store_id, product_variant_id, lock=True)
    if record is None:
        _ensure_variant(product_variant_id)
        record = _create_record_inner(
            store_id=store_id,
            product_variant_id=product_variant_id,
            quantity=quantity,
        )
        return _append_transaction(
            record,
            tx_type=tx_type,
            quantity=quantity,
            before_quantity=0,
            actor_id=actor_id,
            note=note,
            metadata=metadata,
        )

    before = record.quantity
    record.quantity = before + quantity
    guarded_flush(record)
    return _append_transaction(
        record,
        tx_type=tx_type,
        quantity=quantity,
        before_quantity=before,
        actor_id=actor_id,
        note=note,
        metadata=metadata,
    )


def _deduct_inner(
    *,
    store_id: int,
    product_variant_id: int,
    quantity: int,
    actor_id: int,
    note: str | None = None,
    metadata: dict | None = None,
    tx_type: str = TX_REDUCTION,
) -> InventoryTransaction:
    """
    Core decrement without retry or commit.

    The sufficiency check and the write happen against the same loaded row;
    a concurrent write surfaces as VersionConflictError from guarded_flush.
    """
    record = _get_record(store_id, product_variant_id, lock=True)
    available = record.available_quantity if record else 0
    if available < quantity:
        raise InsufficientStockError(
            [_shortfall(store_id, product_variant_id, quantity, available)],
            message=(
                f"Insufficient stock for variant {product_variant_id} at store {store_id}: "
                f"requested {quantity}, available {available}"
            ),
        )

    before = record.quantity
    record.quantity = before - quantity
    guarded_flush(record)
    return _append_transaction(
        record,
        tx_type=tx_type,
        quantity=-quantity,
        before_quantity=before,
        actor_id=actor_id,
        note=note,
        metadata=metadata,
    )


def _reserve_inner(*, store_id: int, product_variant_id: int, quantity: int) -> InventoryRecord:
    """Commit `quantity` free units to fulfilled demand. No transaction row: quantity is unchanged."""
    record = _get_record(store_id, product_variant_id, lock=True)
    available = record.available_quantity if record else 0
    if available < quantity:
        raise InsufficientStockError(
            [_shortfall(store_id, product_variant_id, quantity, available)],
            message=f"Cannot reserve {quantity} of variant {product_variant_id}: only {available} free",
        )
    record.reserved_quantity += quantity
    guarded_flush(record)
    return record


def _release_inner(*, store_id: int, product_variant_id: int, quantity: int) -> InventoryRecord:
    """Return reserved units to free stock."""
    record = _get_record(store_id, product_variant_id, lock=True)
    if record is None or record.reserved_quantity < quantity:
        reserved = record.reserved_quantity if record else 0
        raise ValueError(
            f"Cannot release {quantity} of variant {product_variant_id} at store {store_id}: "
            f"only {reserved} reserved"
        )
    record.reserved_quantity -= quantity
    guarded_flush(record)
    return record


def _collect_shortfalls(store_id: int, items: list[dict]) -> list[dict]:
    """Shortfalls for items at one store; quantities of repeated variants are summed."""
    requested: dict[int, int] = {}
    for item in items:
        variant_id = item["product_variant_id"]
        requested[variant_id] = requested.get(variant_id, 0) + int(item["quantity"])

    shortfalls = []
    for variant_id, qty in requested.items():
        record = _get_record(store_id, variant_id)
        available = record.available_quantity if record else 0
        if available < qty:
            shortfalls.append(_shortfall(store_id, variant_id, qty, available))
    return shortfalls


# =============================================================================
# Queries
# =============================================================================

def check_stock(product_variant_id: int, requested_quantity: int, store_id: int | None = None, *, actor_id) -> bool:
    """True iff a record exists for (store, variant) with enough available stock."""
    require_actor(actor_id, "check_stock")
    store_id = resolve_store_id(store_id)
    record = _get_record(store_id, product_variant_id)
    if record is None:
        return False
    return record.available_quantity >= requested_quantity


def batch_check_stock(items: list[dict], store_id: int | None = None, *, actor_id) -> list[dict]:
    """
    Return a shortfall descriptor for every item that cannot be satisfied.

    items: [{"product_variant_id": int, "quantity": int}]
    Empty result means every item is satisfiable.
    """
    require_actor(actor_id, "batch_check_stock")
    store_id = resolve_store_id(store_id)
    return _collect_shortfalls(store_id, items)


def get_inventory(product_variant_id: int, store_id: int | None = None) -> InventoryRecord | None:
    store_id = resolve_store_id(store_id)
    return _get_record(store_id, product_variant_id)


def list_transactions(
    product_variant_id: int,
    store_id: int | None = None,
    *,
    limit: int | None = None,
) -> list[InventoryTransaction]:
    """Transaction history for one record, newest first."""
    store_id = resolve_store_id(store_id)
    record = _get_record(store_id, product_variant_id)
    if record is None:
        return []
    query = (
        db.session.query(InventoryTransaction)
        .filter_by(inventory_record_id=record.id)
        .order_by(InventoryTransaction.occurred_at.desc(), InventoryTransaction.id.desc())
    )
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def list_low_stock(store_id: int | None = None) -> list[InventoryRecord]:
    """Records at or below their low-stock threshold."""
    query = db.session.query(InventoryRecord).filter(
        InventoryRecord.quantity <= InventoryRecord.low_stock_threshold
    )
    if store_id is not None:
        query = query.filter(InventoryRecord.store_id == store_id)
    records = query.order_by(InventoryRecord.store_id, InventoryRecord.product_variant_id).all()
    if records:
        current_app.logger.warning("%s inventory record(s) at or below low-stock threshold", len(records))
    return records


def get_inventory_time_series(
    product_variant_id: int,
    from_date: date,
    to_date: date,
    store_id: int | None = None,
    *,
    actor_id,
) -> list[dict]:
    """
    End-of-day quantity for each day in [from_date, to_date].

    Starts from the current quantity and walks transactions backward:
    quantity at end of day D = current - sum(deltas that occurred after D).
    Without store_id the curve covers the variant across all stores.
    """
    require_actor(actor_id, "get_inventory_time_series")
    if isinstance(from_date, datetime):
        from_date = from_date.date()
    if isinstance(to_date, datetime):
        to_date = to_date.date()
    if from_date > to_date:
        raise ValidationError("from_date must be on or before to_date")

    query = db.session.query(InventoryRecord).filter_by(product_variant_id=product_variant_id)
    if store_id is not None:
        query = query.filter_by(store_id=store_id)
    records = query.all()

    current = sum(r.quantity for r in records)
    record_ids = [r.id for r in records]

    daily_delta: dict[date, int] = defaultdict(int)
    after_range = 0
    if record_ids:
        window_start = datetime.combine(from_date, time.min)
        rows = (
            db.session.query(InventoryTransaction.occurred_at, InventoryTransaction.quantity)
            .filter(
                InventoryTransaction.inventory_record_id.in_(record_ids),
                InventoryTransaction.occurred_at >= window_start,
            )
            .all()
        )
        for occurred_at, delta in rows:
            day = occurred_at.date()
            if day > to_date:
                after_range += delta
            else:
                daily_delta[day] += delta

    quantity = current - after_range
    series = []
    day = to_date
    while day >= from_date:
        series.append({"date": day.isoformat(), "quantity": quantity})
        quantity -= daily_delta.get(day, 0)
        day -= timedelta(days=1)
    series.reverse()
    return series


# =============================================================================
# Mutations
# =============================================================================

def deduct_stock(
    product_variant_id: int,
    quantity: int,
    store_id: int | None = None,
    *,
    actor_id,
    note: str | None = None,
    metadata: dict | None = None,
) -> InventoryTransaction:
    """
    Remove stock for a sale. Appends a `reduction` transaction.

    Raises InsufficientStockError (with shortfall details) instead of ever
    deducting partially.
    """
    actor_id = require_actor(actor_id, "deduct_stock")
    _require_positive(quantity)

    def _op():
        sid = resolve_store_id(store_id)
        tx = _deduct_inner(
            store_id=sid,
            product_variant_id=product_variant_id,
            quantity=quantity,
            actor_id=actor_id,
            note=note,
            metadata=metadata,
        )
        db.session.commit()
        current_app.logger.info(
            "Stock deducted: store=%s variant=%s qty=%s actor=%s", sid, product_variant_id, quantity, actor_id
        )
        return tx

    return retry_with_backoff(_op)


def return_stock(
    product_variant_id: int,
    quantity: int,
    store_id: int | None = None,
    *,
    actor_id,
    note: str | None = None,
    metadata: dict | None = None,
) -> InventoryTransaction:
    """Put stock back (or in for the first time). Appends an `addition` transaction."""
    actor_id = require_actor(actor_id, "return_stock")
    _require_positive(quantity)

    def _op():
        sid = resolve_store_id(store_id)
        tx = _add_inner(
            store_id=sid,
            product_variant_id=product_variant_id,
            quantity=quantity,
            actor_id=actor_id,
            note=note,
            metadata=metadata,
        )
        db.session.commit()
        current_app.logger.info(
            "Stock returned: store=%s variant=%s qty=%s actor=%s", sid, product_variant_id, quantity, actor_id
        )
        return tx

    return retry_with_backoff(_op)


def _normalize_batch_lines(lines: list[dict], store_id: int | None) -> list[dict]:
    if not isinstance(lines, list) or not lines:
        raise ValidationError("lines must be a non-empty list")
    normalized = []
    for index, line in enumerate(lines):
        if not isinstance(line, dict):
            raise ValidationError(f"lines[{index}] must be an object")
        if line.get("product_variant_id") is None:
            raise ValidationError(f"lines[{index}].product_variant_id is required")
        normalized.append({
            "product_variant_id": _require_positive(
                line["product_variant_id"], f"lines[{index}].product_variant_id"
            ),
            "quantity": _require_positive(line.get("quantity"), f"lines[{index}].quantity"),
            "store_id": resolve_store_id(line.get("store_id", store_id)),
        })
    return normalized


def _batch_deduct_inner(
    lines: list[dict],
    *,
    actor_id: int,
    note: str | None = None,
    metadata: dict | None = None,
) -> list[InventoryTransaction]:
    """
    Deduct every line or raise before touching any row.

    All shortfalls are collected up front so the error lists every
    unsatisfiable variant, not just the first.
    """
    by_store: dict[int, list[dict]] = defaultdict(list)
    for line in lines:
        by_store[line["store_id"]].append(line)

    shortfalls = []
    for sid, store_lines in by_store.items():
        shortfalls.extend(_collect_shortfalls(sid, store_lines))
    if shortfalls:
        raise InsufficientStockError(shortfalls)

    return [
        _deduct_inner(
            store_id=line["store_id"],
            product_variant_id=line["product_variant_id"],
            quantity=line["quantity"],
            actor_id=actor_id,
            note=note,
            metadata=metadata,
        )
        for line in lines
    ]


def batch_deduct_stock(
    lines: list[dict],
    store_id: int | None = None,
    *,
    actor_id,
    note: str | None = None,
    metadata: dict | None = None,
) -> list[InventoryTransaction]:
    """
    Deduct several lines in one DB transaction (all-or-nothing).

    lines: [{"product_variant_id", "quantity", "store_id"?}]
    """
    actor_id = require_actor(actor_id, "batch_deduct_stock")

    def _op():
        normalized = _normalize_batch_lines(lines, store_id)
        txs = _batch_deduct_inner(normalized, actor_id=actor_id, note=note, metadata=metadata)
        db.session.commit()
        current_app.logger.info("Batch deduction committed: %s line(s), actor=%s", len(txs), actor_id)
        return txs

    return retry_with_backoff(_op)


def batch_return_stock(
    lines: list[dict],
    store_id: int | None = None,
    *,
    actor_id,
    note: str | None = None,
    metadata: dict | None = None,
) -> list[InventoryTransaction]:
    """Return several lines in one DB transaction (all-or-nothing)."""
    actor_id = require_actor(actor_id, "batch_return_stock")

    def _op():
        normalized = _normalize_batch_lines(lines, store_id)
        txs = [
            _add_inner(
                store_id=line["store_id"],
                product_variant_id=line["product_variant_id"],
                quantity=line["quantity"],
                actor_id=actor_id,
                note=note,
                metadata=metadata,
            )
            for line in normalized
        ]
        db.session.commit()
        current_app.logger.info("Batch return committed: %s line(s), actor=%s", len(txs), actor_id)
        return txs

    return retry_with_backoff(_op)


def adjust_stock(
    product_variant_id: int,
    quantity_delta: int,
    store_id: int | None = None,
    *,
    actor_id,
    note: str | None = None,
    metadata: dict | None = None,
) -> InventoryTransaction:
    """
    Manual correction (count differences, damage, found stock).

    Appends an `adjustment` transaction. A negative delta may not take the
    quantity below what is reserved for fulfilled backorders.
    """
    actor_id = require_actor(actor_id, "adjust_stock")
    if isinstance(quantity_delta, bool) or not isinstance(quantity_delta, int) or quantity_delta == 0:
        raise ValidationError("quantity_delta must be a non-zero integer")

    def _op():
        sid = resolve_store_id(store_id)
        if quantity_delta > 0:
            tx = _add_inner(
                store_id=sid,
                product_variant_id=product_variant_id,
                quantity=quantity_delta,
                actor_id=actor_id,
                note=note,
                metadata=metadata,
                tx_type=TX_ADJUSTMENT,
            )
        else:
            tx = _deduct_inner(
                store_id=sid,
                product_variant_id=product_variant_id,
                quantity=-quantity_delta,
                actor_id=actor_id,
                note=note,
                metadata=metadata,
                tx_type=TX_ADJUSTMENT,
            )
        db.session.commit()
        current_app.logger.info(
            "Stock adjusted: store=%s variant=%s delta=%s actor=%s", sid, product_variant_id, quantity_delta, actor_id
        )
        return tx

    return retry_with_backoff(_op)


def set_low_stock_threshold(
    product_variant_id: int,
    threshold: int,
    store_id: int | None = None,
    *,
    actor_id,
) -> InventoryRecord:
    actor_id = require_actor(actor_id, "set_low_stock_threshold")
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
        raise ValidationError("threshold must be an integer >= 0")

    def _op():
        sid = resolve_store_id(store_id)
        record = _get_record(sid, product_variant_id, lock=True)
        if record is None:
            raise NotFoundError(
                f"No inventory record for variant {product_variant_id} at store {sid}",
                details={"product_variant_id": product_variant_id, "store_id": sid},
            )
        record.low_stock_threshold = threshold
        guarded_flush(record)
        db.session.commit()
        return record

    return retry_with_backoff(_op)
