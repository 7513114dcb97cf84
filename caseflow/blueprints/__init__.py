"""
Case Lifecycle Engine
Blueprint registry and shared request helpers.
"""

import logging

from flask import g, request
from sqlalchemy import func, select
from werkzeug.exceptions import HTTPException

from caseflow.core.exceptions import LifecycleError, ValidationError
from caseflow.models import db
from caseflow.utils.errors import E, api_error, lifecycle_error_response

logger = logging.getLogger(__name__)


def paginate_query(stmt, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy ``select()``.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = db.session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = db.session.execute(stmt.limit(limit).offset(offset)).scalars().all()
    return items, total


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def actor_context() -> dict:
    """``actor`` / ``actor_role`` / ``tenant_id`` kwargs for a mutating call."""
    if not g.actor:
        raise ValidationError("X-Actor-ID header is required", details={"actor": "required"})
    return {"tenant_id": g.tenant_id, "actor": g.actor, "actor_role": g.actor_role}


def expected_version(data: dict) -> int | None:
    """Optional optimistic-concurrency token from the body or If-Match."""
    raw = data.get("expected_version")
    if raw is None:
        raw = request.headers.get("If-Match")
    if raw is None or raw == "":
        return None
    try:
        return int(str(raw).strip('"'))
    except ValueError:
        raise ValidationError(
            "expected_version must be an integer", details={"expected_version": "must be an integer"},
        ) from None


def register_error_handlers(bp):
    """Map the engine's exceptions onto JSON responses for *bp*."""

    @bp.errorhandler(LifecycleError)
    def _handle_lifecycle_error(error: LifecycleError):
        response = lifecycle_error_response(error)
        logger.info(
            "%s on %s: %s", type(error).__name__, request.endpoint, error,
            extra={"tenant_id": getattr(g, "tenant_id", None), "actor": getattr(g, "actor", None)},
        )
        return response

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
