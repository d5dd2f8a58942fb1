# backend/storeledger/routes/orders.py
"""Order intake, cancellation, deletion and refund routes."""

from flask import Blueprint, request, jsonify, g

from ..services import order_service, refund_service
from ..decorators import require_actor, handle_service_errors


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_actor
@handle_service_errors
def create_order_route():
    """
    Create an order.

    Request body: order intake payload plus optional "force_create": bool.
    Returns 422 with details.shortfalls when stocked lines cannot be served
    and no stock decision covers them.
    """
    data = request.get_json(silent=True) or {}
    force_create = bool(data.pop("force_create", False)) if isinstance(data, dict) else False
    order = order_service.create_order(data, actor_id=g.actor_id, force_create=force_create)
    return jsonify({"order": order.to_dict()}), 201


@orders_bp.get("/<int:order_id>")
@require_actor
@handle_service_errors
def get_order_route(order_id: int):
    order = order_service.get_order(order_id)
    data = order.to_dict()
    data["refunds"] = [refund.to_dict() for refund in refund_service.list_refunds(order_id)]
    return jsonify({"order": data}), 200


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
@handle_service_errors
def cancel_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    order = order_service.cancel_order(order_id, actor_id=g.actor_id, reason=data.get("reason"))
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.delete("/<int:order_id>")
@require_actor
@handle_service_errors
def delete_order_route(order_id: int):
    order_service.delete_order(order_id, actor_id=g.actor_id)
    return jsonify({"deleted": True, "order_id": order_id}), 200


@orders_bp.post("/<int:order_id>/refunds")
@require_actor
@handle_service_errors
def create_refund_route(order_id: int):
    """
    Refund order lines.

    Request body: {"items": [{"order_line_id": int, "quantity": int}],
                   "reason"?: str, "restock"?: bool (default true)}
    """
    data = request.get_json(silent=True) or {}
    refund = refund_service.create_refund(
        order_id,
        data.get("items"),
        actor_id=g.actor_id,
        reason=data.get("reason"),
        restock=bool(data.get("restock", True)),
    )
    return jsonify({"refund": refund.to_dict()}), 201
