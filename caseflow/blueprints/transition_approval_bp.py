"""Transition approval blueprint.

Endpoint groups:
  Thread      GET  /api/v1/transitions/<transition_id>/approval
  Actions     POST /api/v1/transitions/<transition_id>/approval/request
              POST /api/v1/transitions/<transition_id>/approval/decide   {"approve": bool}
              POST /api/v1/transitions/<transition_id>/approval/comment
  Amend       PUT  /api/v1/transitions/<transition_id>                  (unconfirmed only)
  Queue       GET  /api/v1/approvals/pending                            (?case_id=)

The decider must be a different actor from the one who made the move.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from caseflow.blueprints import actor_context, json_body, register_error_handlers
from caseflow.core.exceptions import ValidationError
from caseflow.services import transition_approval_service as approvals

logger = logging.getLogger(__name__)

transition_approval_bp = Blueprint("transition_approval", __name__, url_prefix="/api/v1")
register_error_handlers(transition_approval_bp)


@transition_approval_bp.route("/transitions/<int:transition_id>/approval", methods=["GET"])
def get_thread(transition_id):
    return jsonify(approvals.get_approval_thread(transition_id, tenant_id=g.tenant_id)), 200


@transition_approval_bp.route("/transitions/<int:transition_id>/approval/request", methods=["POST"])
def request_approval(transition_id):
    data = json_body()
    entry = approvals.request_approval(transition_id, comments=data.get("comments"), **actor_context())
    return jsonify(entry.to_dict()), 201


@transition_approval_bp.route("/transitions/<int:transition_id>/approval/decide", methods=["POST"])
def decide(transition_id):
    data = json_body()
    approve = data.get("approve")
    if not isinstance(approve, bool):
        raise ValidationError("approve must be true or false", details={"approve": "required"})
    transition = approvals.decide(
        transition_id, approve, comments=data.get("comments"), **actor_context(),
    )
    return jsonify(transition.to_dict(include_approvals=True)), 200


@transition_approval_bp.route("/transitions/<int:transition_id>/approval/comment", methods=["POST"])
def comment(transition_id):
    data = json_body()
    entry = approvals.add_comment(transition_id, data.get("comments"), **actor_context())
    return jsonify(entry.to_dict()), 201


@transition_approval_bp.route("/transitions/<int:transition_id>", methods=["PUT"])
def amend(transition_id):
    data = json_body()
    data.pop("tenant_id", None)
    transition = approvals.amend_transition(transition_id, data, **actor_context())
    return jsonify(transition.to_dict(include_approvals=True)), 200


@transition_approval_bp.route("/approvals/pending", methods=["GET"])
def pending():
    items = approvals.list_pending_approvals(
        tenant_id=g.tenant_id, case_id=request.args.get("case_id", type=int),
    )
    return jsonify({"items": [t.to_dict() for t in items], "total": len(items)}), 200
