# Overview: Error taxonomy shared by services and routes.

"""
Domain errors raised by the service layer.

Every error carries the HTTP status the API surface maps it to. Routes catch
these explicitly; anything else is logged and reported as a 500.
"""

from __future__ import annotations


class ZoovioError(Exception):
    """Base class for errors the API surface knows how to report."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ZoovioError):
    """400-level input problem, with field-level details."""
    status_code = 400

    def __init__(self, message: str, details: list[dict] | None = None):
        super().__init__(message)
        self.details = details or []


class AuthenticationError(ZoovioError):
    """401: missing, invalid or expired credential."""
    status_code = 401


class AccessDeniedError(ZoovioError):
    """403: resource exists but belongs to someone else."""
    status_code = 403


class NotFoundError(ZoovioError):
    """404: resource missing or not visible to the caller."""
    status_code = 404


class ConflictError(ZoovioError):
    """409-level invariant conflict (e.g., checkout session already attached)."""
    status_code = 409


class InvalidSignatureError(ZoovioError):
    """Webhook authenticity check failed. Never mutates state."""
    status_code = 400


class UpstreamError(ZoovioError):
    """
    Payment processor call failed (timeout, 5xx, auth failure).

    fatal=True marks processor authentication failures: a configuration
    problem the caller must not retry.
    """
    status_code = 500

    def __init__(self, message: str, *, fatal: bool = False, order_id: str | None = None):
        super().__init__(message)
        self.fatal = fatal
        self.order_id = order_id


class PersistenceError(ZoovioError):
    """Ledger write failed; the transaction was rolled back."""
    status_code = 500


class ConfigurationError(RuntimeError):
    """Required configuration is missing at startup."""
