"""Notice / reply sub-ledger blueprint.

Endpoint groups:
  Notices   GET/POST   /api/v1/cases/<case_id>/notices     (?stage_instance_id=)
            GET        /api/v1/stage-instances/<id>/notices
            GET/PUT/DELETE /api/v1/notices/<notice_id>
  Replies   GET/POST   /api/v1/notices/<notice_id>/replies
            GET        /api/v1/stage-instances/<id>/replies
            GET/PUT/DELETE /api/v1/replies/<reply_id>

Deleting a notice that has a filed reply, or a reply that is no longer a
Draft, returns 409.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from caseflow.blueprints import actor_context, json_body, register_error_handlers
from caseflow.services import stage_notice_service, stage_reply_service

logger = logging.getLogger(__name__)

stage_notices_bp = Blueprint("stage_notices", __name__, url_prefix="/api/v1")
register_error_handlers(stage_notices_bp)


def _notice_payload(notice):
    d = notice.to_dict()
    d["due_date_status"] = stage_notice_service.get_due_date_status(notice)
    return d


# ═════════════════════════════════════════════════════════════════════════
# Notices
# ═════════════════════════════════════════════════════════════════════════


@stage_notices_bp.route("/cases/<int:case_id>/notices", methods=["GET"])
def list_case_notices(case_id):
    notices = stage_notice_service.list_notices(
        tenant_id=g.tenant_id,
        case_id=case_id,
        stage_instance_id=request.args.get("stage_instance_id", type=int),
    )
    return jsonify({"items": [_notice_payload(n) for n in notices], "total": len(notices)}), 200


@stage_notices_bp.route("/stage-instances/<int:stage_instance_id>/notices", methods=["GET"])
def list_stage_notices(stage_instance_id):
    notices = stage_notice_service.list_notices(tenant_id=g.tenant_id, stage_instance_id=stage_instance_id)
    return jsonify({"items": [_notice_payload(n) for n in notices], "total": len(notices)}), 200


@stage_notices_bp.route("/cases/<int:case_id>/notices", methods=["POST"])
def create_notice(case_id):
    notice = stage_notice_service.create_notice(case_id, json_body(), **actor_context())
    return jsonify(_notice_payload(notice)), 201


@stage_notices_bp.route("/notices/<int:notice_id>", methods=["GET"])
def get_notice(notice_id):
    notice = stage_notice_service.get_notice(notice_id, tenant_id=g.tenant_id)
    return jsonify(_notice_payload(notice)), 200


@stage_notices_bp.route("/notices/<int:notice_id>", methods=["PUT"])
def update_notice(notice_id):
    notice = stage_notice_service.update_notice(notice_id, json_body(), **actor_context())
    return jsonify(_notice_payload(notice)), 200


@stage_notices_bp.route("/notices/<int:notice_id>", methods=["DELETE"])
def delete_notice(notice_id):
    stage_notice_service.delete_notice(notice_id, **actor_context())
    return jsonify({"message": "Notice deleted"}), 200


# ═════════════════════════════════════════════════════════════════════════
# Replies
# ═════════════════════════════════════════════════════════════════════════


@stage_notices_bp.route("/notices/<int:notice_id>/replies", methods=["GET"])
def list_notice_replies(notice_id):
    replies = stage_reply_service.list_replies(tenant_id=g.tenant_id, notice_id=notice_id)
    return jsonify({"items": [r.to_dict() for r in replies], "total": len(replies)}), 200


@stage_notices_bp.route("/stage-instances/<int:stage_instance_id>/replies", methods=["GET"])
def list_stage_replies(stage_instance_id):
    replies = stage_reply_service.list_replies(tenant_id=g.tenant_id, stage_instance_id=stage_instance_id)
    return jsonify({"items": [r.to_dict() for r in replies], "total": len(replies)}), 200


@stage_notices_bp.route("/notices/<int:notice_id>/replies", methods=["POST"])
def create_reply(notice_id):
    reply = stage_reply_service.create_reply(notice_id, json_body(), **actor_context())
    return jsonify(reply.to_dict()), 201


@stage_notices_bp.route("/replies/<int:reply_id>", methods=["GET"])
def get_reply(reply_id):
    return jsonify(stage_reply_service.get_reply(reply_id, tenant_id=g.tenant_id).to_dict()), 200


@stage_notices_bp.route("/replies/<int:reply_id>", methods=["PUT"])
def update_reply(reply_id):
    reply = stage_reply_service.update_reply(reply_id, json_body(), **actor_context())
    return jsonify(reply.to_dict()), 200


@stage_notices_bp.route("/replies/<int:reply_id>", methods=["DELETE"])
def delete_reply(reply_id):
    stage_reply_service.delete_reply(reply_id, **actor_context())
    return jsonify({"message": "Reply deleted"}), 200
