"""Case lifecycle blueprint.

REST API over the Lifecycle Orchestrator.

Endpoint groups:
  Current state        GET  /api/v1/cases/<case_id>/lifecycle
  Moves                POST /api/v1/cases/<case_id>/lifecycle/start
                       POST /api/v1/cases/<case_id>/lifecycle/advance
                       POST /api/v1/cases/<case_id>/lifecycle/remand
                       POST /api/v1/cases/<case_id>/lifecycle/send-back
  History              GET  /api/v1/cases/<case_id>/lifecycle/stages
                       GET  /api/v1/cases/<case_id>/lifecycle/transitions
                       GET  /api/v1/cases/<case_id>/lifecycle/audit
                       GET  /api/v1/cases/<case_id>/lifecycle/available-stages?type=Forward

Tenant and actor come from the request context middleware. Moves accept
``expected_version`` (body) or ``If-Match`` to fail fast with 409 when the
case changed since the caller last read it.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from caseflow.blueprints import (
    actor_context,
    expected_version,
    json_body,
    paginate_query,
    register_error_handlers,
)
from caseflow.models.lifecycle import TRANSITION_FORWARD
from caseflow.services import lifecycle_service

logger = logging.getLogger(__name__)

lifecycle_bp = Blueprint("lifecycle", __name__, url_prefix="/api/v1")
register_error_handlers(lifecycle_bp)


def _move_kwargs(data: dict) -> dict:
    kwargs = actor_context()
    kwargs.update(
        reason_text=data.get("reason_text"),
        comments=data.get("comments"),
        attachments=data.get("attachments"),
        requires_approval=data.get("requires_approval"),
        expected_version=expected_version(data),
    )
    return kwargs


def _order_meta(data: dict) -> dict:
    meta = dict(data.get("order") or {})
    for key in ("order_no", "order_date", "order_document_id"):
        if key in data and key not in meta:
            meta[key] = data[key]
    return meta


# ═════════════════════════════════════════════════════════════════════════
# State & moves
# ═════════════════════════════════════════════════════════════════════════


@lifecycle_bp.route("/cases/<int:case_id>/lifecycle", methods=["GET"])
def get_lifecycle(case_id):
    return jsonify(lifecycle_service.get_current_state(case_id, tenant_id=g.tenant_id)), 200


@lifecycle_bp.route("/cases/<int:case_id>/lifecycle/start", methods=["POST"])
def start_lifecycle(case_id):
    data = json_body()
    kwargs = actor_context()
    result = lifecycle_service.start_case_lifecycle(
        case_id,
        stage_key=data.get("stage_key") or "Assessment",
        comments=data.get("comments"),
        expected_version=expected_version(data),
        **kwargs,
    )
    return jsonify(result), 201


@lifecycle_bp.route("/cases/<int:case_id>/lifecycle/advance", methods=["POST"])
def advance(case_id):
    data = json_body()
    result = lifecycle_service.advance_case(
        case_id,
        data.get("from_stage_instance_id"),
        data.get("to_stage_key"),
        checklist_overrides=data.get("checklist_overrides"),
        **_move_kwargs(data),
    )
    return jsonify(result), 201


@lifecycle_bp.route("/cases/<int:case_id>/lifecycle/remand", methods=["POST"])
def remand(case_id):
    data = json_body()
    result = lifecycle_service.remand_case(
        case_id,
        data.get("from_stage_instance_id"),
        data.get("to_stage_key"),
        reason_enum=data.get("reason_enum"),
        order_meta=_order_meta(data),
        **_move_kwargs(data),
    )
    return jsonify(result), 201


@lifecycle_bp.route("/cases/<int:case_id>/lifecycle/send-back", methods=["POST"])
def send_back(case_id):
    data = json_body()
    result = lifecycle_service.send_back_case(
        case_id,
        data.get("from_stage_instance_id"),
        data.get("to_stage_key"),
        reason_enum=data.get("reason_enum"),
        **_move_kwargs(data),
    )
    return jsonify(result), 201


# ═════════════════════════════════════════════════════════════════════════
# History (read-only)
# ═════════════════════════════════════════════════════════════════════════


@lifecycle_bp.route("/cases/<int:case_id>/lifecycle/stages", methods=["GET"])
def stage_history(case_id):
    items = lifecycle_service.get_stage_history(case_id, tenant_id=g.tenant_id)
    return jsonify({"items": items, "total": len(items)}), 200


@lifecycle_bp.route("/cases/<int:case_id>/lifecycle/transitions", methods=["GET"])
def transition_ledger(case_id):
    items = lifecycle_service.get_transition_ledger(case_id, tenant_id=g.tenant_id)
    return jsonify({"items": items, "total": len(items)}), 200


@lifecycle_bp.route("/cases/<int:case_id>/lifecycle/audit", methods=["GET"])
def audit_trail(case_id):
    stmt = lifecycle_service.get_audit_trail(
        case_id, tenant_id=g.tenant_id, entity_type=request.args.get("entity_type"),
    )
    items, total = paginate_query(stmt, default_limit=100, max_limit=500)
    return jsonify({"items": [a.to_dict() for a in items], "total": total}), 200


@lifecycle_bp.route("/cases/<int:case_id>/lifecycle/available-stages", methods=["GET"])
def available_stages(case_id):
    transition_type = request.args.get("type", TRANSITION_FORWARD)
    stages = lifecycle_service.get_available_stages(case_id, transition_type, tenant_id=g.tenant_id)
    return jsonify({"type": transition_type, "stages": stages}), 200
