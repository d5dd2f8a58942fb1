# backend/storeledger/routes/backorders.py
"""Backorder listing, summary, conversion, allocation report and preview routes."""

from flask import Blueprint, request, jsonify, g

from ..services import backorder_service, order_service, purchase_service
from ..decorators import require_actor, handle_service_errors
from ..validation import ValidationError, coerce_int
from storeledger.time_utils import parse_iso_date


backorders_bp = Blueprint("backorders", __name__, url_prefix="/api/backorders")


def _optional_int_arg(name: str):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return coerce_int(name, raw)


def _optional_date_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_date(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date")


@backorders_bp.get("")
@require_actor
@handle_service_errors
def list_backorders_route():
    lines = order_service.list_backorder_lines(
        _optional_int_arg("variant_id"),
        _optional_int_arg("store_id"),
    )
    return jsonify({
        "backorders": [
            {
                **line.to_dict(),
                "order_number": line.order.order_number,
                "store_id": line.order.store_id,
                "fulfillment_priority": line.order.fulfillment_priority,
                "remaining_quantity": line.remaining_quantity,
            }
            for line in lines
        ]
    }), 200


@backorders_bp.get("/report/<int:variant_id>")
@require_actor
@handle_service_errors
def allocation_report_route(variant_id: int):
    report = backorder_service.get_allocation_report(variant_id, _optional_int_arg("store_id"))
    return jsonify(report), 200


@backorders_bp.post("/simulate")
@require_actor
@handle_service_errors
def simulate_route():
    """
    Preview an allocation without writing anything.

    Request body: {"product_variant_id": int, "available_quantity": int, "store_id"?: int}
    """
    data = request.get_json(silent=True) or {}
    variant_id = coerce_int("product_variant_id", data.get("product_variant_id"))
    available = coerce_int("available_quantity", data.get("available_quantity"))
    if available < 0:
        raise ValidationError("available_quantity must be >= 0")
    store_id = data.get("store_id")
    preview = backorder_service.simulate_allocation(
        variant_id,
        available,
        coerce_int("store_id", store_id) if store_id is not None else None,
    )
    return jsonify(preview), 200


@backorders_bp.get("/summary")
@require_actor
@handle_service_errors
def backorder_summary_route():
    summary = backorder_service.get_backorder_summary(
        _optional_int_arg("store_id"),
        _optional_date_arg("date_from"),
        _optional_date_arg("date_to"),
    )
    return jsonify({"summary": summary}), 200


@backorders_bp.post("/convert")
@require_actor
@handle_service_errors
def convert_to_purchase_route():
    """
    Raise pending purchases for waiting backorder lines.

    Request body: {"order_line_ids": [int], "store_id"?: int}
    """
    data = request.get_json(silent=True) or {}
    store_id = data.get("store_id")
    purchases = purchase_service.create_purchase_from_backorders(
        data.get("order_line_ids"),
        coerce_int("store_id", store_id) if store_id is not None else None,
        actor_id=g.actor_id,
    )
    return jsonify({"purchases": [p.to_dict() for p in purchases]}), 201
