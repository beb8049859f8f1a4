"""
Centralized API error helpers and the dashboard exception hierarchy
"""

from flask import jsonify, request, current_app, g
from typing import Any, Dict, Optional


class DashboardError(Exception):
    """Base error raised by dashboard services; mapped to a JSON error body."""

    status_code = 500
    code = 'internal'

    def __init__(self, message: str = 'Internal server error', errors: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors


class ValidationError(DashboardError):
    status_code = 400
    code = 'validation'


class LimitExceededError(ValidationError):
    """Standard-tier allowance exhausted (command count or playlist size)."""

    code = 'limit'


class UnauthorizedError(DashboardError):
    status_code = 401
    code = 'unauthorized'


class ForbiddenError(DashboardError):
    status_code = 403
    code = 'forbidden'


class NotFoundError(DashboardError):
    status_code = 404
    code = 'not_found'


class StoreUnavailableError(DashboardError):
    """The document store could not complete a read or write."""

    code = 'store_unavailable'


def api_error_response(status_code: int, message: str, errors: Optional[Dict[str, Any]] = None,
                       code: Optional[str] = None):
    """
    Build a standardized JSON API error response (privacy-preserving).
    """
    payload = {
        "status": "error",
        "message": message,
        "path": request.path if request else None,
        "request_id": getattr(g, "request_id", None),
    }
    if code:
        payload["code"] = code
    # Do not include detailed errors in production to avoid data leakage
    if errors and (not current_app or current_app.config.get("ENV") != "production"):
        payload["errors"] = errors

    response = jsonify(payload)
    response.status_code = status_code
    # Ensure sensitive responses are never cached
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    return response


def dashboard_error_response(error: DashboardError):
    """Render a DashboardError raised anywhere below a view function."""
    return api_error_response(error.status_code, error.message, errors=error.errors, code=error.code)
