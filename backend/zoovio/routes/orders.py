# Overview: Flask API routes for the signed-in user's orders.

# backend/zoovio/routes/orders.py
"""
Order API Routes

Orders are created by the checkout flow (routes/payments.py); here a user
lists them, reads one, and cancels a pending one.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import ZoovioError
from ..decorators import require_auth
from ..services import checkout_service, order_service
from ..services.order_lifecycle import ORDER_CANCELLED
from ..services.processor_adapter import get_processor
from . import client_context, error_response


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("")
@require_auth
def list_orders_route():
    try:
        orders = order_service.list_orders_for_user(g.current_user.id)
        return jsonify({"orders": [o.to_dict(include_items=True) for o in orders]}), 200

    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<order_id>")
@require_auth
def get_order_route(order_id: str):
    """
    Returns:
        200: order with line items and payments
        403: order belongs to another user
        404: order not found
    """
    try:
        order = order_service.get_order_for_user(order_id, g.current_user.id)
        data = order.to_dict(include_items=True)
        data["payments"] = [p.to_dict() for p in order.payments]
        return jsonify({"order": data}), 200

    except ZoovioError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<order_id>/status")
@require_auth
def update_order_status_route(order_id: str):
    """
    Shopper-initiated status change. Only cancellation is supported.

    Request body:
    {
        "status": "cancelled"
    }

    Returns:
        200: updated order
        400: unsupported status
        403/404: not your order / no such order
        409: order already paid, already cancelled, or its checkout session
             can no longer be expired
    """
    try:
        data = request.get_json(silent=True) or {}
        status = data.get("status")
        if status != ORDER_CANCELLED:
            return jsonify({"error": "Only cancellation is supported"}), 400

        order = checkout_service.cancel_order_for_user(
            g.current_user,
            order_id,
            processor=get_processor(),
            **client_context(),
        )
        return jsonify({"order": order.to_dict(include_items=True)}), 200

    except ZoovioError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500
