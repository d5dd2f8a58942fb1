from __future__ import annotations
from datetime import date, datetime
from storeledger.time_utils import parse_iso_datetime, parse_iso_date

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime, Date
from sqlalchemy.orm import DeclarativeMeta


# Maximum money amount: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999

STOCK_DECISION_ACTIONS = {"transfer", "purchase"}
FULFILLMENT_PRIORITIES = ("urgent", "high", "normal", "low")


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int:
    """Strict integer coercion: rejects floats, bools, decimals and scientific notation."""
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, Date):
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                d = parse_iso_date(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 date")
            if d is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 date")
            return d
        raise ValidationError(f"{col.key} must be a date")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _money_field(key: str, raw: Any, *, required: bool = False) -> int:
    if raw is None:
        if required:
            raise ValidationError(f"{key} is required")
        return 0
    value = coerce_int(key, raw)
    if value < 0:
        raise ValidationError(f"{key} must be >= 0")
    if value > MAX_PRICE_CENTS:
        raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS}")
    return value


def _positive_quantity(key: str, raw: Any) -> int:
    if raw is None:
        raise ValidationError(f"{key} is required")
    value = coerce_int(key, raw)
    if value <= 0:
        raise ValidationError(f"{key} must be > 0")
    return value


def _optional_id(key: str, raw: Any) -> int | None:
    if raw is None:
        return None
    return _positive_quantity(key, raw)


def normalize_order_payload(payload: dict) -> dict:
    """
    Normalize an order intake payload.

    Shape:
        {
          "store_id": int | null,
          "fulfillment_priority": "urgent" | "high" | "normal" | "low",
          "expected_delivery_date": "YYYY-MM-DD" | null,
          "shipping_fee_cents", "tax_cents", "discount_cents": int >= 0,
          "notes": str | null,
          "items": [{product_variant_id|null, quantity, unit_price_cents,
                     discount_cents, is_stocked_sale, is_backorder}],
          "stock_decisions": [{product_variant_id, action, transfers?, purchase_quantity?}]
        }
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    priority = payload.get("fulfillment_priority") or "normal"
    if priority not in FULFILLMENT_PRIORITIES:
        raise ValidationError(
            f"fulfillment_priority must be one of: {', '.join(FULFILLMENT_PRIORITIES)}"
        )

    expected = payload.get("expected_delivery_date")
    if expected is not None and not isinstance(expected, date):
        try:
            expected = parse_iso_date(str(expected))
        except ValueError:
            raise ValidationError("expected_delivery_date must be an ISO-8601 date")

    normalized_items = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        is_stocked = bool(item.get("is_stocked_sale", False))
        is_backorder = bool(item.get("is_backorder", False))
        if is_stocked and is_backorder:
            raise ValidationError(f"items[{index}] cannot be both a stocked sale and a backorder")
        normalized_items.append({
            "product_variant_id": _optional_id(f"items[{index}].product_variant_id", item.get("product_variant_id")),
            "quantity": _positive_quantity(f"items[{index}].quantity", item.get("quantity")),
            "unit_price_cents": _money_field(
                f"items[{index}].unit_price_cents", item.get("unit_price_cents"), required=True
            ),
            "discount_cents": _money_field(f"items[{index}].discount_cents", item.get("discount_cents")),
            "is_stocked_sale": is_stocked,
            "is_backorder": is_backorder,
            "product_name": (str(item["product_name"]).strip() if item.get("product_name") else None),
        })

    decisions = []
    for index, decision in enumerate(payload.get("stock_decisions") or []):
        if not isinstance(decision, dict):
            raise ValidationError(f"stock_decisions[{index}] must be an object")
        action = decision.get("action")
        if action not in STOCK_DECISION_ACTIONS:
            raise ValidationError(
                f"stock_decisions[{index}].action must be one of: {', '.join(sorted(STOCK_DECISION_ACTIONS))}"
            )
        transfers = []
        for t_index, transfer in enumerate(decision.get("transfers") or []):
            if not isinstance(transfer, dict):
                raise ValidationError(f"stock_decisions[{index}].transfers[{t_index}] must be an object")
            transfers.append({
                "from_store_id": _positive_quantity(
                    f"stock_decisions[{index}].transfers[{t_index}].from_store_id", transfer.get("from_store_id")
                ),
                "quantity": _positive_quantity(
                    f"stock_decisions[{index}].transfers[{t_index}].quantity", transfer.get("quantity")
                ),
            })
        if action == "transfer" and not transfers:
            raise ValidationError(f"stock_decisions[{index}] requires transfers for action 'transfer'")
        purchase_quantity = decision.get("purchase_quantity")
        decisions.append({
            "product_variant_id": _positive_quantity(
                f"stock_decisions[{index}].product_variant_id", decision.get("product_variant_id")
            ),
            "action": action,
            "transfers": transfers,
            "purchase_quantity": (
                _positive_quantity(f"stock_decisions[{index}].purchase_quantity", purchase_quantity)
                if purchase_quantity is not None else None
            ),
        })

    return {
        "store_id": _optional_id("store_id", payload.get("store_id")),
        "fulfillment_priority": priority,
        "expected_delivery_date": expected,
        "shipping_fee_cents": _money_field("shipping_fee_cents", payload.get("shipping_fee_cents")),
        "tax_cents": _money_field("tax_cents", payload.get("tax_cents")),
        "discount_cents": _money_field("discount_cents", payload.get("discount_cents")),
        "notes": (str(payload["notes"]).strip() if payload.get("notes") else None),
        "items": normalized_items,
        "stock_decisions": decisions,
    }


def normalize_purchase_payload(payload: dict) -> dict:
    """
    Normalize a purchase intake payload:
        {store_id, items: [{product_variant_id, quantity, cost_price_cents}],
         shipping_cost_cents, status, notes}
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    normalized_items = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        normalized_items.append({
            "product_variant_id": _positive_quantity(
                f"items[{index}].product_variant_id", item.get("product_variant_id")
            ),
            "quantity": _positive_quantity(f"items[{index}].quantity", item.get("quantity")),
            "cost_price_cents": _money_field(
                f"items[{index}].cost_price_cents", item.get("cost_price_cents"), required=True
            ),
        })

    status = payload.get("status") or "pending"
    if not isinstance(status, str):
        raise ValidationError("status must be a string")

    return {
        "store_id": _optional_id("store_id", payload.get("store_id")),
        "shipping_cost_cents": _money_field("shipping_cost_cents", payload.get("shipping_cost_cents")),
        "status": status.strip(),
        "notes": (str(payload["notes"]).strip() if payload.get("notes") else None),
        "items": normalized_items,
    }


def enforce_rules_inventory_adjust(patch: dict) -> None:
    # ADJUST requires qty != 0
    if "quantity" in patch:
        if patch["quantity"] is None or patch["quantity"] == 0:
            raise ValidationError("quantity must be non-zero for an adjustment")
