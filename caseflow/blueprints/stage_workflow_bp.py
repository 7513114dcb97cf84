"""Stage workflow blueprint — steps and checklist of one stage instance.

Endpoint groups:
  Workflow state     GET  /api/v1/stage-instances/<id>/workflow
                     GET  /api/v1/stage-instances/<id>/summary
  Steps              POST /api/v1/stage-instances/<id>/workflow/steps/<step_key>/complete
                     POST /api/v1/stage-instances/<id>/workflow/steps/<step_key>/skip
  Checklist          GET  /api/v1/stage-instances/<id>/checklist        (no writes)
                     POST /api/v1/stage-instances/<id>/checklist/evaluate
                     POST /api/v1/checklist-items/<id>/attest
                     POST /api/v1/checklist-items/<id>/override

A blocked step or checklist returns 423 with ``blocking_reasons``.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify

from caseflow.blueprints import actor_context, expected_version, json_body, register_error_handlers
from caseflow.services import checklist_service, lifecycle_service, stage_workflow_service

logger = logging.getLogger(__name__)

stage_workflow_bp = Blueprint("stage_workflow", __name__, url_prefix="/api/v1")
register_error_handlers(stage_workflow_bp)


# ═════════════════════════════════════════════════════════════════════════
# Workflow
# ═════════════════════════════════════════════════════════════════════════


@stage_workflow_bp.route("/stage-instances/<int:stage_instance_id>/workflow", methods=["GET"])
def get_workflow(stage_instance_id):
    return jsonify(lifecycle_service.get_workflow_state(stage_instance_id, tenant_id=g.tenant_id)), 200


@stage_workflow_bp.route("/stage-instances/<int:stage_instance_id>/summary", methods=["GET"])
def get_summary(stage_instance_id):
    return jsonify(stage_workflow_service.get_summary(stage_instance_id, tenant_id=g.tenant_id)), 200


@stage_workflow_bp.route(
    "/stage-instances/<int:stage_instance_id>/workflow/steps/<step_key>/complete", methods=["POST"],
)
def complete_step(stage_instance_id, step_key):
    data = json_body()
    result = lifecycle_service.complete_workflow_step(
        stage_instance_id, step_key,
        notes=data.get("notes"),
        expected_version=expected_version(data),
        **actor_context(),
    )
    return jsonify(result), 200


@stage_workflow_bp.route(
    "/stage-instances/<int:stage_instance_id>/workflow/steps/<step_key>/skip", methods=["POST"],
)
def skip_step(stage_instance_id, step_key):
    data = json_body()
    result = lifecycle_service.skip_workflow_step(
        stage_instance_id, step_key, data.get("reason"),
        expected_version=expected_version(data),
        **actor_context(),
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Checklist
# ═════════════════════════════════════════════════════════════════════════


@stage_workflow_bp.route("/stage-instances/<int:stage_instance_id>/checklist", methods=["GET"])
def get_checklist(stage_instance_id):
    verdict = checklist_service.evaluate(stage_instance_id, tenant_id=g.tenant_id, persist=False)
    return jsonify(verdict), 200


@stage_workflow_bp.route("/stage-instances/<int:stage_instance_id>/checklist/evaluate", methods=["POST"])
def evaluate_checklist(stage_instance_id):
    verdict = checklist_service.evaluate(stage_instance_id, tenant_id=g.tenant_id, persist=True)
    return jsonify(verdict), 200


@stage_workflow_bp.route("/checklist-items/<int:item_id>/attest", methods=["POST"])
def attest_item(item_id):
    data = json_body()
    item = checklist_service.attest(
        item_id,
        note=data.get("note"),
        evidence_ref=data.get("evidence_ref"),
        expected_version=expected_version(data),
        **actor_context(),
    )
    return jsonify(item.to_dict()), 200


@stage_workflow_bp.route("/checklist-items/<int:item_id>/override", methods=["POST"])
def override_item(item_id):
    data = json_body()
    item = checklist_service.override(
        item_id,
        note=data.get("note"),
        evidence_ref=data.get("evidence_ref"),
        expected_version=expected_version(data),
        **actor_context(),
    )
    return jsonify(item.to_dict()), 200
