"""JSON error bodies for the lifecycle API.

Every error response has the same shape::

    {"error": "<human message>", "code": "ERR_...", "details": {...}}

plus ``blocking_reasons`` at the top level for 423 responses, so the UI can
list what keeps a stage open without digging into ``details``.

    return api_error(E.NOT_FOUND, "Stage instance not found")
    return lifecycle_error_response(exc)   # from a service exception
"""

from __future__ import annotations

from flask import jsonify

from caseflow.core.exceptions import (
    BlockedError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)


class E:
    """Machine-readable ``code`` values."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    NOT_FOUND = "ERR_NOT_FOUND"
    INVALID_STATE = "ERR_INVALID_STATE"    # operation not allowed in current status
    CONFLICT_STATE = "ERR_CONFLICT_STATE"  # lost a concurrent update (stale version)
    BLOCKED = "ERR_BLOCKED"                # checklist gates not satisfied
    FORBIDDEN = "ERR_FORBIDDEN"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    INTERNAL = "ERR_INTERNAL"


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 422,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.INVALID_STATE: 409,
    E.CONFLICT_STATE: 409,
    E.BLOCKED: 423,
    E.FORBIDDEN: 403,
    E.RATE_LIMITED: 429,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None, **extra):
    """Build ``(response, status)`` for a Flask view.

    ``status`` overrides the code's default (400 for unknown codes).
    Keyword extras become additional top-level keys.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    body.update(extra)
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)


def lifecycle_error_response(exc):
    """Translate a service exception into its HTTP error body."""
    match exc:
        case NotFoundError():
            return api_error(E.NOT_FOUND, f"{exc.resource} not found")
        case ValidationError():
            missing = "required" in exc.details.values()
            return api_error(
                E.VALIDATION_REQUIRED if missing else E.VALIDATION_INVALID,
                str(exc),
                details=exc.details,
            )
        case BlockedError():
            return api_error(E.BLOCKED, str(exc), blocking_reasons=exc.blocking_reasons)
        case ConflictError():
            return api_error(E.CONFLICT_STATE, exc.reason, details=exc.details)
        case InvalidStateError():
            return api_error(
                E.INVALID_STATE,
                exc.reason,
                details={"resource": exc.resource, "current_status": exc.current_status},
            )
    return api_error(E.INTERNAL, "Internal server error")
