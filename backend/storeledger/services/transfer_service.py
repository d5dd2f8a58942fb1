# Overview: Inter-store stock transfers; each transfer is a paired transfer_out / transfer_in ledger movement.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import IllegalStatusTransitionError, NotFoundError
from ..models import InventoryTransfer
from ..models.inventory import (
    TRANSFER_STATUS_CANCELLED,
    TRANSFER_STATUS_COMPLETED,
    TX_TRANSFER_CANCEL,
    TX_TRANSFER_IN,
    TX_TRANSFER_OUT,
)
from ..validation import ValidationError
from storeledger.time_utils import utcnow
from .concurrency import guarded_flush, lock_for_update, retry_with_backoff
from .document_service import next_document_number
from .inventory_service import _add_inner, _deduct_inner, require_actor
from .store_service import get_store


def _transfer_metadata(transfer: InventoryTransfer) -> dict:
    data = {
        "transfer_id": transfer.id,
        "transfer_number": transfer.transfer_number,
        "from_store_id": transfer.from_store_id,
        "to_store_id": transfer.to_store_id,
    }
    if transfer.order_id is not None:
        data["order_id"] = transfer.order_id
    return data


def _create_transfer_inner(
    *,
    from_store_id: int,
    to_store_id: int,
    product_variant_id: int,
    quantity: int,
    actor_id: int,
    order_id: int | None = None,
    notes: str | None = None,
) -> InventoryTransfer:
    """
    Create a completed transfer inside the caller's transaction.

    The source must have enough available stock; otherwise
    InsufficientStockError is raised before the destination is touched.
    """
    if from_store_id == to_store_id:
        raise ValidationError("from_store_id and to_store_id must differ")
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")
    get_store(from_store_id)
    get_store(to_store_id)

    transfer = InventoryTransfer(
        transfer_number=next_document_number(store_id=from_store_id, document_type="TRANSFER"),
        from_store_id=from_store_id,
        to_store_id=to_store_id,
        product_variant_id=product_variant_id,
        quantity=quantity,
        status=TRANSFER_STATUS_COMPLETED,
        order_id=order_id,
        actor_id=actor_id,
        notes=notes,
    )
    db.session.add(transfer)
    db.session.flush()

    metadata = _transfer_metadata(transfer)
    _deduct_inner(
        store_id=from_store_id,
        product_variant_id=product_variant_id,
        quantity=quantity,
        actor_id=actor_id,
        note=f"Transfer {transfer.transfer_number} to store {to_store_id}",
        metadata=metadata,
        tx_type=TX_TRANSFER_OUT,
    )
    _add_inner(
        store_id=to_store_id,
        product_variant_id=product_variant_id,
        quantity=quantity,
        actor_id=actor_id,
        note=f"Transfer {transfer.transfer_number} from store {from_store_id}",
        metadata=metadata,
        tx_type=TX_TRANSFER_IN,
    )
    return transfer


def create_transfer(
    from_store_id: int,
    to_store_id: int,
    product_variant_id: int,
    quantity: int,
    *,
    actor_id,
    notes: str | None = None,
) -> InventoryTransfer:
    actor_id = require_actor(actor_id, "create_transfer")

    def _op():
        transfer = _create_transfer_inner(
            from_store_id=from_store_id,
            to_store_id=to_store_id,
            product_variant_id=product_variant_id,
            quantity=quantity,
            actor_id=actor_id,
            notes=notes,
        )
        db.session.commit()
        current_app.logger.info(
            "Transfer %s: variant=%s qty=%s store %s -> %s",
            transfer.transfer_number,
            product_variant_id,
            quantity,
            from_store_id,
            to_store_id,
        )
        return transfer

    return retry_with_backoff(_op)


def get_transfer(transfer_id: int) -> InventoryTransfer:
    transfer = db.session.get(InventoryTransfer, transfer_id)
    if transfer is None:
        raise NotFoundError(f"Transfer {transfer_id} not found", details={"transfer_id": transfer_id})
    return transfer


def cancel_transfer(transfer_id: int, *, actor_id, reason: str | None = None) -> InventoryTransfer:
    """
    Move the stock back to the source store.

    Writes transfer_cancel rows at both ends. The destination must still hold
    the units as available stock.
    """
    actor_id = require_actor(actor_id, "cancel_transfer")

    def _op():
        transfer = lock_for_update(
            db.session.query(InventoryTransfer).filter_by(id=transfer_id)
        ).first()
        if transfer is None:
            raise NotFoundError(f"Transfer {transfer_id} not found", details={"transfer_id": transfer_id})
        if transfer.status != TRANSFER_STATUS_COMPLETED:
            raise IllegalStatusTransitionError(transfer.status, TRANSFER_STATUS_CANCELLED, [])

        metadata = _transfer_metadata(transfer)
        if reason:
            metadata["reason"] = reason
        _deduct_inner(
            store_id=transfer.to_store_id,
            product_variant_id=transfer.product_variant_id,
            quantity=transfer.quantity,
            actor_id=actor_id,
            note=f"Cancel transfer {transfer.transfer_number}",
            metadata=metadata,
            tx_type=TX_TRANSFER_CANCEL,
        )
        _add_inner(
            store_id=transfer.from_store_id,
            product_variant_id=transfer.product_variant_id,
            quantity=transfer.quantity,
            actor_id=actor_id,
            note=f"Cancel transfer {transfer.transfer_number}",
            metadata=metadata,
            tx_type=TX_TRANSFER_CANCEL,
        )

        transfer.status = TRANSFER_STATUS_CANCELLED
        transfer.cancelled_at = utcnow()
        guarded_flush(transfer)
        db.session.commit()
        current_app.logger.info("Transfer %s cancelled by actor %s", transfer.transfer_number, actor_id)
        return transfer

    return retry_with_backoff(_op)
