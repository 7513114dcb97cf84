"""
Health endpoints.

    GET /api/v1/health        liveness, no dependencies touched
    GET /api/v1/health/ready  readiness: database round-trip plus document
                              service mode (remote / local)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from caseflow.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def health():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe. 503 when the database cannot be reached.

    The document service is reported but never fails the probe: auto_dms
    checklist items just stay Pending while it is down.
    """
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Readiness: database unreachable: %s", exc)
        database = {"ok": False, "error": str(exc)}
    else:
        database = {"ok": True, "latency_ms": round((time.perf_counter() - started) * 1000, 1)}

    documents = "remote" if current_app.config.get("DOCUMENT_SERVICE_URL") else "local"
    body = {
        "status": "ok" if database["ok"] else "degraded",
        "database": database,
        "document_service": documents,
    }
    return jsonify(body), 200 if database["ok"] else 503
