from __future__ import annotations

from ..extensions import db
from storeledger.time_utils import utcnow, to_utc_z
from .versioning import next_version


class Purchase(db.Model):
    """
    Incoming stock for one store.

    Status is driven exclusively by purchase_service.PURCHASE_TRANSITIONS.
    The version column makes two concurrent "complete" calls collide, so the
    received quantity is allocated at most once.
    """
    __tablename__ = "purchases"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_purchases_order_number"),
        db.Index("ix_purchases_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    status = db.Column(db.String(24), nullable=False, default="pending")

    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=False)

    version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = db.relationship(
        "PurchaseLine",
        back_populates="purchase",
        cascade="all, delete-orphan",
        order_by="PurchaseLine.id",
    )
    status_history = db.relationship(
        "PurchaseStatusHistory",
        back_populates="purchase",
        cascade="all, delete-orphan",
        order_by="PurchaseStatusHistory.id",
    )

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": next_version,
    }

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "store_id": self.store_id,
            "status": self.status,
            "shipping_cost_cents": self.shipping_cost_cents,
            "total_amount_cents": self.total_amount_cents,
            "notes": self.notes,
            "created_by": self.created_by,
            "version": self.version,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class PurchaseLine(db.Model):
    __tablename__ = "purchase_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_purchase_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    # None until goods arrive; set per line on partially_received / received
    received_quantity = db.Column(db.Integer, nullable=True)

    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    allocated_shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    purchase = db.relationship("Purchase", back_populates="lines")
    allocations = db.relationship(
        "BackorderAllocation",
        back_populates="purchase_line",
        order_by="BackorderAllocation.id",
    )

    @property
    def credited_quantity(self) -> int:
        """Quantity that enters the ledger when the purchase completes."""
        if self.received_quantity is None:
            return self.quantity
        return self.received_quantity

    @property
    def line_cost_cents(self) -> int:
        return self.cost_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "product_variant_id": self.product_variant_id,
            "quantity": self.quantity,
            "received_quantity": self.received_quantity,
            "cost_price_cents": self.cost_price_cents,
            "allocated_shipping_cost_cents": self.allocated_shipping_cost_cents,
        }


class PurchaseStatusHistory(db.Model):
    __tablename__ = "purchase_status_history"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    from_status = db.Column(db.String(24), nullable=True)
    to_status = db.Column(db.String(24), nullable=False)
    actor_id = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
    )

    purchase = db.relationship("Purchase", back_populates="status_history")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


class BackorderAllocation(db.Model):
    """
    History of received units handed to backorder lines.

    One row per (purchase line, order line) award. order_line_id is cleared
    if the order is later deleted so the purchase side of the history survives.
    """
    __tablename__ = "backorder_allocations"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_backorder_allocations_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_line_id = db.Column(db.Integer, db.ForeignKey("purchase_lines.id"), nullable=False, index=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=True, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    # units handed back by order cancellation or refund
    released_quantity = db.Column(db.Integer, nullable=False, default=0)
    priority_tier = db.Column(db.String(16), nullable=False)
    allocated_by = db.Column(db.Integer, nullable=False)
    reversed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
    )

    purchase_line = db.relationship("PurchaseLine", back_populates="allocations")
    order_line = db.relationship("OrderLine")

    @property
    def open_quantity(self) -> int:
        if self.reversed_at is not None:
            return 0
        return self.quantity - self.released_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_line_id": self.purchase_line_id,
            "order_line_id": self.order_line_id,
            "quantity": self.quantity,
            "released_quantity": self.released_quantity,
            "priority_tier": self.priority_tier,
            "allocated_by": self.allocated_by,
            "reversed_at": to_utc_z(self.reversed_at),
            "created_at": to_utc_z(self.created_at),
        }
