# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/zoovio/routes/auth.py
"""
Authentication API routes

- Self-registration for shoppers
- Email/password login issuing an opaque bearer token
- Logout revokes the presented token
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import ZoovioError
from ..services import auth_service
from ..services import session_service
from ..decorators import bearer_token, require_auth
from ..validation import parse_registration_request
from . import error_response


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/register")
def register_route():
    """
    Create a shopper account and sign it in.

    Returns:
        201: {"user", "token"}
        400: Validation failed
        409: Email already registered
    """
    try:
        data = parse_registration_request(request.get_json(silent=True))
        user = auth_service.create_user(
            data.pop("email"),
            data.pop("password"),
            data.pop("full_name"),
            **data,
        )

        _, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        current_app.logger.info("Registered user %s", user.id)

        return jsonify({"user": user.to_dict(), "token": token}), 201

    except ZoovioError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to register user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Token must be included in Authorization header for protected routes.
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")

        if not all([email, password]):
            return jsonify({"error": "email and password required"}), 400

        user = auth_service.authenticate(email, password)
        if not user:
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )

        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "session": session.to_dict(),
            "message": "Login successful"
        }), 200

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    try:
        session_service.revoke_session(bearer_token(), "User logout")
        return jsonify({"message": "Logged out"}), 200

    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": g.current_user.to_dict()}), 200
