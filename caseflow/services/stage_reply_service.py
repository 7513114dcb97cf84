"""
Reply sub-ledger — replies filed against notices.

A reply belongs to exactly one notice of the same case; the case and
stage instance are copied from that notice. Filing a reply moves the notice
to Replied; a Draft moves a Received notice to Reply Pending. A reply that
has been filed can never return to Draft, and only Drafts can be deleted.
"""

import logging
from datetime import date

from sqlalchemy import select

from caseflow.core.exceptions import ConflictError, InvalidStateError, ValidationError
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.lifecycle import StageInstance
from caseflow.models.stage_workflow import (
    REPLY_DRAFT,
    REPLY_FILING_MODES,
    REPLY_FILING_STATUSES,
    REPLY_SUBMITTED,
    StageNotice,
    StageReply,
)
from caseflow.services.helpers.scoped_queries import get_scoped
from caseflow.services.helpers.unit_of_work import atomic
from caseflow.services.stage_notice_service import recompute_notice_status

logger = logging.getLogger(__name__)


def _apply_fields(reply: StageReply, data: dict, errors: dict) -> None:
    if "reply_date" in data:
        value = data["reply_date"]
        if value in (None, ""):
            reply.reply_date = None
        elif isinstance(value, date):
            reply.reply_date = value
        else:
            try:
                reply.reply_date = date.fromisoformat(str(value))
            except ValueError:
                errors["reply_date"] = "must be an ISO date (YYYY-MM-DD)"
    if "reply_reference" in data:
        reply.reply_reference = (data["reply_reference"] or "").strip() or None
    if "filing_mode" in data:
        mode = data["filing_mode"]
        if mode not in (None, "") and mode not in REPLY_FILING_MODES:
            errors["filing_mode"] = f"must be one of {list(REPLY_FILING_MODES)}"
        else:
            reply.filing_mode = mode or None
    if "filing_status" in data:
        status = data["filing_status"]
        if status not in REPLY_FILING_STATUSES:
            errors["filing_status"] = f"must be one of {list(REPLY_FILING_STATUSES)}"
        elif status == REPLY_DRAFT and reply.filing_status in REPLY_SUBMITTED:
            raise InvalidStateError(
                "StageReply", reply.id, reply.filing_status,
                "A filed reply cannot return to Draft",
            )
        else:
            reply.filing_status = status
    if "documents" in data:
        docs = data["documents"] or []
        if not isinstance(docs, list):
            errors["documents"] = "must be a list of document references"
        else:
            reply.documents = list(docs)
    if "notes" in data:
        reply.notes = data["notes"]
    if "filed_by" in data:
        reply.filed_by = data["filed_by"] or None


def _stamp_filing(reply: StageReply, actor: str) -> None:
    if reply.filing_status in REPLY_SUBMITTED:
        if not reply.filed_by:
            reply.filed_by = actor
        if reply.reply_date is None:
            reply.reply_date = date.today()


# ── Reads ────────────────────────────────────────────────────────────────────


def get_reply(reply_id: int, *, tenant_id: int) -> StageReply:
    return get_scoped(StageReply, reply_id, tenant_id=tenant_id)


def list_replies(*, tenant_id: int, notice_id: int | None = None, stage_instance_id: int | None = None):
    """Replies to one notice, or all replies filed within a stage instance."""
    if notice_id is None and stage_instance_id is None:
        raise ValidationError("notice_id or stage_instance_id is required")
    stmt = select(StageReply).where(StageReply.tenant_id == tenant_id)
    if notice_id is not None:
        get_scoped(StageNotice, notice_id, tenant_id=tenant_id)
        stmt = stmt.where(StageReply.notice_id == notice_id)
    if stage_instance_id is not None:
        get_scoped(StageInstance, stage_instance_id, tenant_id=tenant_id)
        stmt = stmt.where(StageReply.stage_instance_id == stage_instance_id)
    return db.session.execute(stmt.order_by(StageReply.created_at, StageReply.id)).scalars().all()


def _optional_id(data: dict, field: str, errors: dict) -> int | None:
    value = data.get(field)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        errors[field] = "must be an integer id"
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        errors[field] = "must be an integer id"
        return None


# ── Mutations ────────────────────────────────────────────────────────────────


def create_reply(
    notice_id: int,
    data: dict,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
) -> StageReply:
    """File (or draft) a reply against *notice_id*."""
    with atomic():
        notice = get_scoped(StageNotice, notice_id, tenant_id=tenant_id)
        errors = {}
        case_id = _optional_id(data, "case_id", errors)
        if case_id is not None and case_id != notice.case_id:
            raise ValidationError(
                "Reply must belong to the same case as its notice",
                details={"notice_id": "belongs to a different case"},
            )
        reply = StageReply(
            tenant_id=notice.tenant_id,
            notice_id=notice.id,
            case_id=notice.case_id,
            stage_instance_id=_optional_id(data, "stage_instance_id", errors) or notice.stage_instance_id,
            filing_status=REPLY_DRAFT,
            documents=[],
            created_by=actor,
        )
        if reply.stage_instance_id is not None:
            instance = db.session.get(StageInstance, reply.stage_instance_id)
            if instance is None or instance.case_id != notice.case_id:
                errors["stage_instance_id"] = "must reference a stage instance of the notice's case"
        _apply_fields(reply, data, errors)
        if errors:
            raise ValidationError("Invalid reply", details=errors)
        _stamp_filing(reply, actor)
        db.session.add(reply)
        db.session.flush()
        notice_status = recompute_notice_status(notice)
        write_audit(
            entity_type="stage_reply", entity_id=reply.id, action="reply.create",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=notice.case_id,
            diff={"notice_id": notice.id, "filing_status": reply.filing_status,
                  "notice_status": notice_status},
        )
    logger.info(
        "Reply %s (%s) recorded against notice %s", reply.id, reply.filing_status, notice.id,
        extra={"tenant_id": tenant_id, "case_id": notice.case_id,
               "stage_instance_id": reply.stage_instance_id, "actor": actor},
    )
    return reply


def update_reply(
    reply_id: int,
    data: dict,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
) -> StageReply:
    if "notice_id" in data and data["notice_id"] is not None:
        raise ValidationError("A reply cannot be moved to another notice", details={"notice_id": "immutable"})
    with atomic():
        reply = get_scoped(StageReply, reply_id, tenant_id=tenant_id)
        before = reply.to_dict()
        errors = {}
        _apply_fields(reply, data, errors)
        if errors:
            raise ValidationError("Invalid reply", details=errors)
        _stamp_filing(reply, actor)
        db.session.flush()
        notice_status = recompute_notice_status(reply.notice)
        after = reply.to_dict()
        write_audit(
            entity_type="stage_reply", entity_id=reply.id, action="reply.update",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=reply.case_id,
            diff={
                **{k: {"old": before[k], "new": after[k]}
                   for k in after if k != "updated_at" and before.get(k) != after[k]},
                "notice_status": notice_status,
            },
        )
    return reply


def delete_reply(
    reply_id: int,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
) -> None:
    """Only Draft replies can be deleted."""
    with atomic():
        reply = get_scoped(StageReply, reply_id, tenant_id=tenant_id)
        if reply.filing_status != REPLY_DRAFT:
            raise ConflictError(
                "StageReply", reply.id,
                f"Reply is {reply.filing_status}; only Draft replies can be deleted",
            )
        notice = reply.notice
        case_id = reply.case_id
        db.session.delete(reply)
        db.session.flush()
        notice_status = recompute_notice_status(notice)
        write_audit(
            entity_type="stage_reply", entity_id=reply_id, action="reply.delete",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=case_id,
            diff={"notice_id": notice.id, "notice_status": notice_status},
        )
