# backend/storeledger/routes/transfers.py
"""Inter-store transfer routes."""

from flask import Blueprint, request, jsonify, g

from ..services import transfer_service
from ..decorators import require_actor, handle_service_errors
from ..validation import coerce_int


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")


@transfers_bp.post("")
@require_actor
@handle_service_errors
def create_transfer_route():
    """
    Move stock between stores.

    Request body:
    {
        "from_store_id": int,
        "to_store_id": int,
        "product_variant_id": int,
        "quantity": int,
        "notes": str (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    transfer = transfer_service.create_transfer(
        coerce_int("from_store_id", data.get("from_store_id")),
        coerce_int("to_store_id", data.get("to_store_id")),
        coerce_int("product_variant_id", data.get("product_variant_id")),
        coerce_int("quantity", data.get("quantity")),
        actor_id=g.actor_id,
        notes=data.get("notes"),
    )
    return jsonify({"transfer": transfer.to_dict()}), 201


@transfers_bp.post("/<int:transfer_id>/cancel")
@require_actor
@handle_service_errors
def cancel_transfer_route(transfer_id: int):
    data = request.get_json(silent=True) or {}
    transfer = transfer_service.cancel_transfer(transfer_id, actor_id=g.actor_id, reason=data.get("reason"))
    return jsonify({"transfer": transfer.to_dict()}), 200
