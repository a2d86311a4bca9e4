# Overview: Flask API routes for hosted checkout; session creation, verification, history, and processor webhooks.

# backend/zoovio/routes/payments.py
"""
Payment API Routes

DESIGN:
- Create a pending order and a hosted checkout session in one call
- Verify a session when the payer is redirected back
- Receive processor webhooks (signature-checked, never authenticated by token)
- Payment history for the signed-in user

All state changes go through services/checkout_service.py.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import InvalidSignatureError, ZoovioError
from ..decorators import require_auth
from ..services import checkout_service, payment_service
from ..services.processor_adapter import get_processor
from ..validation import parse_checkout_session_request
from . import client_context, error_response, return_base_url


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# CHECKOUT SESSIONS
# =============================================================================

@payments_bp.post("/create-checkout-session")
@require_auth
def create_checkout_session_route():
    """
    Create a pending order and open a hosted checkout session.

    Request body:
    {
        "currency": "usd",
        "customerName": "Jane Doe",
        "customerEmail": "jane@example.com",
        "cartItems": [{"id": "p1", "name": "Rex", "price": 19.99, "quantity": 1,
                       "category": "dogs", "breed": "Beagle", "images": ["..."]}],
        "amount": 19.99,              (optional, must match the cart total)
        "shippingAddress": {...},     (optional)
        "billingAddress": {...},      (optional)
        "description": "..."          (optional)
    }

    Returns:
        201: {"sessionId", "sessionUrl", "orderId", "orderNumber"}
        400: Validation failed (details lists each field)
        401: Not signed in
        500: Payment service or database failure (orderId set when an order exists)
    """
    try:
        checkout = parse_checkout_session_request(
            request.get_json(silent=True),
            current_app.config["SUPPORTED_CURRENCIES"],
        )
        result = checkout_service.create_checkout_session(
            g.current_user,
            checkout,
            processor=get_processor(),
            return_base_url=return_base_url(),
            **client_context(),
        )
        return jsonify(result), 201

    except ZoovioError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create checkout session")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/orders/<order_id>/checkout-session")
@require_auth
def retry_checkout_session_route(order_id: str):
    """
    Open a checkout session for a pending order whose first attempt failed.

    Returns:
        201: {"sessionId", "sessionUrl", "orderId", "orderNumber"}
        404: Order not found
        409: Order already has a session or is no longer pending
    """
    try:
        result = checkout_service.retry_checkout_session(
            g.current_user,
            order_id,
            processor=get_processor(),
            return_base_url=return_base_url(),
            **client_context(),
        )
        return jsonify(result), 201

    except ZoovioError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to retry checkout session")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/verify-session/<session_id>")
@require_auth
def verify_session_route(session_id: str):
    """
    Reconcile the order behind a checkout session with the processor.

    Returns:
        200: {"orderId", "orderNumber", "status", "paymentStatus", "amount", "currency", "customerEmail"}
        404: No order of yours uses this session, or the processor does not know it
        500: Payment service failure
    """
    try:
        result = checkout_service.verify_session(
            g.current_user,
            session_id,
            processor=get_processor(),
            **client_context(),
        )
        return jsonify(result), 200

    except ZoovioError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify checkout session")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# HISTORY
# =============================================================================

@payments_bp.get("/history")
@require_auth
def payment_history_route():
    """The signed-in user's payments, newest first."""
    try:
        payments = payment_service.get_payment_history(g.current_user.id)
        return jsonify({"payments": payments}), 200

    except Exception:
        current_app.logger.exception("Failed to load payment history")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# WEBHOOKS
# =============================================================================

@payments_bp.post("/webhook")
def webhook_route():
    """
    Processor notifications.

    The signature covers the raw body, so the body is read as bytes and
    never re-serialized before verification.

    Returns:
        200: {"received": true} (also for ignored or unmatched events)
        400: Missing/invalid signature or unparseable event
        500: Ledger failure (the processor redelivers)
    """
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")

    try:
        checkout_service.handle_webhook(
            payload,
            signature,
            processor=get_processor(),
            **client_context(),
        )
        return jsonify({"received": True}), 200

    except InvalidSignatureError as e:
        return jsonify({"error": f"Webhook Error: {e.message}"}), 400
    except ZoovioError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process webhook")
        return jsonify({"error": "Internal server error"}), 500
