from flask import jsonify, request, current_app

from ..errors import UpstreamError, ValidationError, ZoovioError


def error_response(exc: ZoovioError):
    """JSON body and status for a domain error."""
    body = {"error": exc.message}
    if isinstance(exc, ValidationError) and exc.details:
        body["details"] = exc.details
    if isinstance(exc, UpstreamError) and exc.order_id:
        body["orderId"] = exc.order_id
    return jsonify(body), exc.status_code


def client_context() -> dict:
    """ip_address / user_agent for audit entries."""
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }


def return_base_url() -> str:
    """
    Where the hosted checkout page sends the payer back.

    A known frontend Origin wins; otherwise FRONTEND_BASE_URL.
    """
    origin = request.headers.get("Origin")
    if origin and origin in current_app.config.get("CORS_ORIGINS", ()):
        return origin
    return current_app.config["FRONTEND_BASE_URL"]
