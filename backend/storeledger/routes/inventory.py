# backend/storeledger/routes/inventory.py
"""
Inventory ledger routes.

All routes require an actor (X-Actor-Id). store_id is optional everywhere;
omitted means the default store.

Time semantics:
- time-series accepts ISO-8601 dates (YYYY-MM-DD) for `from` and `to`, both inclusive.
"""
from flask import Blueprint, request, jsonify, g

from ..models import InventoryRecord
from ..services import inventory_service
from ..decorators import require_actor, handle_service_errors
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    ValidationError,
    coerce_int,
    enforce_rules_inventory_adjust,
)
from storeledger.time_utils import parse_iso_date


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

INVENTORY_ADJUST_POLICY = ModelValidationPolicy(
    writable_fields={"store_id", "product_variant_id", "quantity"},
    required_on_create={"product_variant_id", "quantity"},
)


def _store_id_arg():
    raw = request.args.get("store_id")
    if raw is None or raw == "":
        return None
    return coerce_int("store_id", raw)


def _date_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        raise ValidationError(f"{name} is required (YYYY-MM-DD)")
    try:
        return parse_iso_date(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date")


@inventory_bp.get("/<int:variant_id>")
@require_actor
@handle_service_errors
def get_inventory_route(variant_id: int):
    record = inventory_service.get_inventory(variant_id, _store_id_arg())
    if record is None:
        return jsonify({"error": "No inventory record", "product_variant_id": variant_id}), 404
    return jsonify({"inventory": record.to_dict()}), 200


@inventory_bp.get("/<int:variant_id>/transactions")
@require_actor
@handle_service_errors
def list_transactions_route(variant_id: int):
    limit = request.args.get("limit")
    transactions = inventory_service.list_transactions(
        variant_id,
        _store_id_arg(),
        limit=coerce_int("limit", limit) if limit else None,
    )
    return jsonify({"transactions": [tx.to_dict() for tx in transactions]}), 200


@inventory_bp.get("/<int:variant_id>/time-series")
@require_actor
@handle_service_errors
def time_series_route(variant_id: int):
    series = inventory_service.get_inventory_time_series(
        variant_id,
        _date_arg("from"),
        _date_arg("to"),
        _store_id_arg(),
        actor_id=g.actor_id,
    )
    return jsonify({"product_variant_id": variant_id, "series": series}), 200


@inventory_bp.post("/check")
@require_actor
@handle_service_errors
def check_stock_route():
    """
    Check availability for a list of items.

    Request body: {"store_id"?: int, "items": [{"product_variant_id": int, "quantity": int}]}
    """
    data = request.get_json(silent=True) or {}
    items = data.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    normalized = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{i}] must be an object")
        normalized.append({
            "product_variant_id": coerce_int(f"items[{i}].product_variant_id", item.get("product_variant_id")),
            "quantity": coerce_int(f"items[{i}].quantity", item.get("quantity")),
        })
    store_id = data.get("store_id")
    shortfalls = inventory_service.batch_check_stock(
        normalized,
        coerce_int("store_id", store_id) if store_id is not None else None,
        actor_id=g.actor_id,
    )
    return jsonify({"available": not shortfalls, "shortfalls": shortfalls}), 200


@inventory_bp.post("/adjust")
@require_actor
@handle_service_errors
def adjust_stock_route():
    """
    Manual adjustment.

    Request body: {"store_id"?: int, "product_variant_id": int, "quantity": int (signed, non-zero),
                   "note"?: str, "metadata"?: object}
    """
    payload = dict(request.get_json(silent=True) or {})
    note = payload.pop("note", None)
    metadata = payload.pop("metadata", None)
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")

    patch = validate_payload(
        model=InventoryRecord,
        payload=payload,
        policy=INVENTORY_ADJUST_POLICY,
        partial=False,
    )
    enforce_rules_inventory_adjust(patch)

    tx = inventory_service.adjust_stock(
        patch["product_variant_id"],
        patch["quantity"],
        patch.get("store_id"),
        actor_id=g.actor_id,
        note=note,
        metadata=metadata,
    )
    return jsonify({"transaction": tx.to_dict()}), 201


@inventory_bp.get("/low-stock")
@require_actor
@handle_service_errors
def low_stock_route():
    records = inventory_service.list_low_stock(_store_id_arg())
    return jsonify({"items": [record.to_dict() for record in records]}), 200
