# backend/storeledger/routes/purchases.py
"""Purchase intake and status routes."""

from flask import Blueprint, request, jsonify, g

from ..services import purchase_service
from ..decorators import require_actor, handle_service_errors
from ..validation import ValidationError


purchases_bp = Blueprint("purchases", __name__, url_prefix="/api/purchases")


@purchases_bp.post("")
@require_actor
@handle_service_errors
def create_purchase_route():
    data = request.get_json(silent=True) or {}
    purchase = purchase_service.create_purchase(data, actor_id=g.actor_id)
    return jsonify({"purchase": purchase.to_dict()}), 201


@purchases_bp.get("/<int:purchase_id>")
@require_actor
@handle_service_errors
def get_purchase_route(purchase_id: int):
    purchase = purchase_service.get_purchase(purchase_id)
    data = purchase.to_dict()
    data["status_history"] = [entry.to_dict() for entry in purchase.status_history]
    data["allowed_transitions"] = purchase_service.allowed_transitions(purchase.status)
    return jsonify({"purchase": data}), 200


@purchases_bp.post("/<int:purchase_id>/status")
@require_actor
@handle_service_errors
def update_status_route(purchase_id: int):
    """
    Move a purchase to a new status.

    Request body: {"status": str, "received_quantities"?: {purchase_line_id: int}, "note"?: str}
    Returns 422 with the allowed next states for an illegal transition.
    """
    data = request.get_json(silent=True) or {}
    status = data.get("status")
    if not isinstance(status, str) or not status.strip():
        raise ValidationError("status is required")
    received = data.get("received_quantities")
    if received is not None and not isinstance(received, dict):
        raise ValidationError("received_quantities must be an object keyed by purchase line id")

    purchase = purchase_service.update_purchase_status(
        purchase_id,
        status.strip(),
        actor_id=g.actor_id,
        received_quantities=received,
        note=data.get("note"),
    )
    return jsonify({"purchase": purchase.to_dict()}), 200
