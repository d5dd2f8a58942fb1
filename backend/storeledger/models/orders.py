from __future__ import annotations

import enum

from ..extensions import db
from storeledger.time_utils import utcnow, to_utc_z
from .versioning import next_version


class LineKind(str, enum.Enum):
    """
    Closed classification of an order line, fixed at creation.

    STOCKED_SALE: sold from the ordering store's ledger immediately.
    BACKORDER:    demand deferred until a purchase supplies it.
    CUSTOM:       no inventory involvement at all.
    """
    STOCKED_SALE = "stocked_sale"
    BACKORDER = "backorder"
    CUSTOM = "custom"


# OrderLine.stock_source values: where fulfilled units came from
STOCK_SOURCE_LEDGER = "ledger"
STOCK_SOURCE_ALLOCATION = "allocation"

# Order.status values
ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_CANCELLED = "cancelled"

# Allocation tiers, highest priority first
PRIORITY_TIERS = ("urgent", "high", "normal", "low")


class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING)
    fulfillment_priority = db.Column(db.String(16), nullable=False, default="normal")
    expected_delivery_date = db.Column(db.Date, nullable=True)

    # Money (cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    grand_total_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=False)

    version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
        index=True,
    )
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = db.relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLine.id",
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
            "fulfillment_priority": self.fulfillment_priority,
            "expected_delivery_date": (
                self.expected_delivery_date.isoformat() if self.expected_delivery_date else None
            ),
            "subtotal_cents": self.subtotal_cents,
            "shipping_fee_cents": self.shipping_fee_cents,
            "tax_cents": self.tax_cents,
            "discount_cents": self.discount_cents,
            "grand_total_cents": self.grand_total_cents,
            "notes": self.notes,
            "created_by": self.created_by,
            "version": self.version,
            "created_at": to_utc_z(self.created_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """
    One requested product on an order.

    `kind` never changes after creation. Fulfilment progress
    (fulfilled_quantity, is_fulfilled, fulfilled_at, stock_source) may.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
        db.CheckConstraint(
            "fulfilled_quantity >= 0 AND fulfilled_quantity <= quantity",
            name="ck_order_lines_fulfilled_within_quantity",
        ),
        db.Index("ix_order_lines_variant_kind", "product_variant_id", "kind"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)

    product_name = db.Column(db.String(255), nullable=True)
    sku = db.Column(db.String(64), nullable=True)

    kind = db.Column(db.String(16), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)

    fulfilled_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_fulfilled = db.Column(db.Boolean, nullable=False, default=False)
    fulfilled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stock_source = db.Column(db.String(16), nullable=True)

    refunded_quantity = db.Column(db.Integer, nullable=False, default=0)

    # purchase line raised for this backorder; set once, blocks a second conversion
    purchase_line_id = db.Column(db.Integer, db.ForeignKey("purchase_lines.id"), nullable=True, index=True)

    version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
    )

    order = db.relationship("Order", back_populates="lines")
    purchase_line = db.relationship("PurchaseLine")

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": next_version,
    }

    @property
    def line_kind(self) -> LineKind:
        return LineKind(self.kind)

    @property
    def is_stocked_sale(self) -> bool:
        return self.kind == LineKind.STOCKED_SALE.value

    @property
    def is_backorder(self) -> bool:
        return self.kind == LineKind.BACKORDER.value

    @property
    def remaining_quantity(self) -> int:
        return self.quantity - self.fulfilled_quantity

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity - self.discount_cents

    def add_fulfilled_quantity(self, quantity: int, *, source: str) -> None:
        """Record fulfilment progress; stamps fulfilled_at when the line completes."""
        if quantity <= 0:
            raise ValueError("fulfilled quantity increment must be positive")
        if self.fulfilled_quantity + quantity > self.quantity:
            raise ValueError(
                f"order line {self.id}: cannot fulfil {quantity}, only {self.remaining_quantity} outstanding"
            )
        self.fulfilled_quantity += quantity
        self.stock_source = source
        if self.fulfilled_quantity == self.quantity:
            self.is_fulfilled = True
            self.fulfilled_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_variant_id": self.product_variant_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "kind": self.kind,
            "is_stocked_sale": self.is_stocked_sale,
            "is_backorder": self.is_backorder,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "line_total_cents": self.line_total_cents,
            "fulfilled_quantity": self.fulfilled_quantity,
            "is_fulfilled": self.is_fulfilled,
            "fulfilled_at": to_utc_z(self.fulfilled_at),
            "stock_source": self.stock_source,
            "refunded_quantity": self.refunded_quantity,
            "purchase_line_id": self.purchase_line_id,
            "version": self.version,
        }


class Refund(db.Model):
    __tablename__ = "refunds"
    __table_args__ = (
        db.UniqueConstraint("refund_number", name="uq_refunds_refund_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    refund_number = db.Column(db.String(32), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)
    total_refund_cents = db.Column(db.Integer, nullable=False, default=0)
    restock = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
    )

    lines = db.relationship(
        "RefundLine",
        back_populates="refund",
        cascade="all, delete-orphan",
        order_by="RefundLine.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "refund_number": self.refund_number,
            "order_id": self.order_id,
            "reason": self.reason,
            "total_refund_cents": self.total_refund_cents,
            "restock": self.restock,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class RefundLine(db.Model):
    __tablename__ = "refund_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_refund_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False, index=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    refund_cents = db.Column(db.Integer, nullable=False, default=0)
    restocked_quantity = db.Column(db.Integer, nullable=False, default=0)

    refund = db.relationship("Refund", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "refund_id": self.refund_id,
            "order_line_id": self.order_line_id,
            "quantity": self.quantity,
            "refund_cents": self.refund_cents,
            "restocked_quantity": self.restocked_quantity,
        }
