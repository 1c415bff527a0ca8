"""Standardised API error responses.

Usage
-----
    from pmis.utils.errors import api_error, E, register_error_handlers

    return api_error(E.VALIDATION_REQUIRED, "actor_id is required")

    bp = Blueprint(...)
    register_error_handlers(bp)   # maps service exceptions to JSON errors
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from pmis.core.exceptions import (
    InvalidStateTransitionError, NotFoundError, UnauthorizedError, ValidationError,
)
from pmis.utils.helpers import request_actor_id

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Malformed request: HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business rule: HTTP 422
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found: HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Wrong state: HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Policy: HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server: HTTP 500
    INTERNAL = "ERR_INTERNAL"


_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None,
              details: dict | None = None):
    """Return ``(jsonify(body), http_status)`` for a standard error body."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _DEFAULT_STATUS.get(code, 400)


def register_error_handlers(bp) -> None:
    """Attach the service-exception handlers to a blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(InvalidStateTransitionError)
    def _handle_transition(error: InvalidStateTransitionError):
        return api_error(E.CONFLICT_STATE, str(error),
                         details={"current": error.current, "allowed": error.allowed})

    @bp.errorhandler(UnauthorizedError)
    def _handle_unauthorized(error: UnauthorizedError):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")


def require_actor():
    """``(actor_id, None)`` or ``(None, error_response)`` when no actor was sent."""
    actor_id = request_actor_id()
    if actor_id is None:
        return None, api_error(E.VALIDATION_REQUIRED, "actor_id is required (X-User-Id header)")
    return actor_id, None
