from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from storeledger.time_utils import utcnow, to_utc_z
from .versioning import next_version


# InventoryTransaction.type values
TX_ADDITION = "addition"
TX_REDUCTION = "reduction"
TX_ADJUSTMENT = "adjustment"
TX_TRANSFER_IN = "transfer_in"
TX_TRANSFER_OUT = "transfer_out"
TX_TRANSFER_CANCEL = "transfer_cancel"

TRANSACTION_TYPES = (
    TX_ADDITION,
    TX_REDUCTION,
    TX_ADJUSTMENT,
    TX_TRANSFER_IN,
    TX_TRANSFER_OUT,
    TX_TRANSFER_CANCEL,
)


class InventoryRecord(db.Model):
    """
    Authoritative stock row for one (store, variant) pair.

    INVARIANTS:
    - Exactly one row per (store_id, product_variant_id).
    - 0 <= reserved_quantity <= quantity at all times.
    - version starts at 0 and grows by 1 on every successful UPDATE
      (SQLAlchemy version_id_col); a stale write raises StaleDataError.

    reserved_quantity counts units already committed to fulfilled backorder
    lines that have not left the store. available_quantity is what new
    demand may consume.
    """
    __tablename__ = "inventory_records"
    __table_args__ = (
        db.UniqueConstraint("store_id", "product_variant_id", name="uq_inventory_store_variant"),
        db.CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_non_negative"),
        db.CheckConstraint("reserved_quantity <= quantity", name="ck_inventory_reserved_within_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=0)

    version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=db.func.now(),
    )

    transactions = db.relationship(
        "InventoryTransaction",
        back_populates="record",
        order_by="InventoryTransaction.id",
        lazy="dynamic",
    )

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": next_version,
    }

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.low_stock_threshold

    def __repr__(self) -> str:
        return (
            f"<InventoryRecord store={self.store_id} variant={self.product_variant_id} "
            f"qty={self.quantity} v{self.version}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_variant_id": self.product_variant_id,
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
            "low_stock_threshold": self.low_stock_threshold,
            "is_low_stock": self.is_low_stock,
            "version": self.version,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryTransaction(db.Model):
    """
    Append-only audit row for one ledger mutation.

    after_quantity == before_quantity + quantity always holds.
    Rows are never updated or deleted (enforced by mapper events below).
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.CheckConstraint(
            "after_quantity = before_quantity + quantity",
            name="ck_invtx_after_equals_before_plus_delta",
        ),
        db.Index("ix_invtx_record_occurred", "inventory_record_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    inventory_record_id = db.Column(
        db.Integer, db.ForeignKey("inventory_records.id"), nullable=False, index=True
    )

    type = db.Column(db.String(32), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    before_quantity = db.Column(db.Integer, nullable=False)
    after_quantity = db.Column(db.Integer, nullable=False)

    actor_id = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    meta = db.Column("metadata", db.JSON, nullable=True)

    occurred_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
        index=True,
    )

    record = db.relationship("InventoryRecord", back_populates="transactions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "inventory_record_id": self.inventory_record_id,
            "type": self.type,
            "quantity": self.quantity,
            "before_quantity": self.before_quantity,
            "after_quantity": self.after_quantity,
            "actor_id": self.actor_id,
            "note": self.note,
            "metadata": self.meta or {},
            "occurred_at": to_utc_z(self.occurred_at),
        }


@event.listens_for(InventoryTransaction, "before_update")
def _reject_transaction_update(mapper, connection, target):
    raise ValueError(f"InventoryTransaction {target.id} is immutable")


@event.listens_for(InventoryTransaction, "before_delete")
def _reject_transaction_delete(mapper, connection, target):
    raise ValueError(f"InventoryTransaction {target.id} cannot be deleted")


# InventoryTransfer.status values
TRANSFER_STATUS_COMPLETED = "completed"
TRANSFER_STATUS_CANCELLED = "cancelled"


class InventoryTransfer(db.Model):
    """
    Stock moved from one store to another.

    Completing a transfer writes transfer_out at the source and transfer_in at
    the destination in one DB transaction. Cancelling writes a pair of
    transfer_cancel rows that put the stock back.
    """
    __tablename__ = "inventory_transfers"
    __table_args__ = (
        db.UniqueConstraint("transfer_number", name="uq_inventory_transfers_number"),
        db.CheckConstraint("quantity > 0", name="ck_inventory_transfers_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_number = db.Column(db.String(32), nullable=False)

    from_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    to_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=TRANSFER_STATUS_COMPLETED, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    actor_id = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
    )
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": next_version,
    }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_number": self.transfer_number,
            "from_store_id": self.from_store_id,
            "to_store_id": self.to_store_id,
            "product_variant_id": self.product_variant_id,
            "quantity": self.quantity,
            "status": self.status,
            "order_id": self.order_id,
            "actor_id": self.actor_id,
            "notes": self.notes,
            "version": self.version,
            "created_at": to_utc_z(self.created_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
        }
