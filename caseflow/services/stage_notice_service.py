"""
Notice sub-ledger — notices received within a case's stages.

Notices are case-level legal records: a stage instance references them but
does not own them. Deleting a notice that already has a filed reply is a
ConflictError; deleting one with only Draft replies removes the drafts too.

The notice's status follows its replies:
    any Filed / Acknowledged reply  → Replied   (workflow_step ≥ reply)
    only Draft replies              → Reply Pending
    no replies                      → Received
Closed is set explicitly and is never recomputed away.
"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from sqlalchemy import select

from caseflow.core.exceptions import ConflictError, ValidationError
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.case import LegalCase
from caseflow.models.lifecycle import StageInstance
from caseflow.models.stage_workflow import (
    NOTICE_CLOSED,
    NOTICE_RECEIVED,
    NOTICE_REPLIED,
    NOTICE_REPLY_PENDING,
    NOTICE_STATUSES,
    NOTICE_WORKFLOW_STEPS,
    REPLY_DRAFT,
    REPLY_SUBMITTED,
    StageNotice,
    StageReply,
)
from caseflow.services.helpers.scoped_queries import get_scoped
from caseflow.services.helpers.unit_of_work import atomic

logger = logging.getLogger(__name__)

_TEXT_FIELDS = (
    "notice_type", "notice_number", "offline_reference_no", "issuing_authority",
    "section_invoked", "financial_year",
)
_DATE_FIELDS = ("notice_date", "due_date", "tax_period_start", "tax_period_end")
_AMOUNT_FIELDS = ("tax_amount", "interest_amount", "penalty_amount")
_FLAG_FIELDS = ("tax_applicable", "interest_applicable", "penalty_applicable", "is_original")


# ── Input normalisation ──────────────────────────────────────────────────────


def _parse_date(value, field, errors):
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        errors[field] = "must be an ISO date (YYYY-MM-DD)"
        return None


def _parse_amount(value, field, errors):
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        errors[field] = "must be a number"
        return None
    if amount < 0:
        errors[field] = "must not be negative"
        return None
    return amount


def _apply_fields(notice: StageNotice, data: dict, errors: dict) -> None:
    for field in _TEXT_FIELDS:
        if field in data:
            value = data[field]
            setattr(notice, field, value.strip() if isinstance(value, str) and value.strip() else None)
    for field in _DATE_FIELDS:
        if field in data:
            setattr(notice, field, _parse_date(data[field], field, errors))
    for field in _AMOUNT_FIELDS:
        if field in data:
            setattr(notice, field, _parse_amount(data[field], field, errors))
    for field in _FLAG_FIELDS:
        if field in data:
            setattr(notice, field, bool(data[field]))
    if "status" in data:
        if data["status"] not in NOTICE_STATUSES:
            errors["status"] = f"must be one of {list(NOTICE_STATUSES)}"
        else:
            notice.status = data["status"]
    if "workflow_step" in data:
        if data["workflow_step"] not in NOTICE_WORKFLOW_STEPS:
            errors["workflow_step"] = f"must be one of {list(NOTICE_WORKFLOW_STEPS)}"
        else:
            notice.workflow_step = data["workflow_step"]
    if "documents" in data:
        docs = data["documents"] or []
        if not isinstance(docs, list):
            errors["documents"] = "must be a list of document references"
        else:
            notice.documents = list(docs)
    if "metadata" in data:
        notice.extra_metadata = dict(data["metadata"] or {})

    if notice.notice_date and notice.due_date and notice.due_date < notice.notice_date:
        errors["due_date"] = "must not be before notice_date"
    if notice.tax_period_start and notice.tax_period_end and notice.tax_period_end < notice.tax_period_start:
        errors["tax_period_end"] = "must not be before tax_period_start"


def _check_stage_instance(notice: StageNotice, data: dict, errors: dict) -> None:
    if "stage_instance_id" not in data:
        return
    sid = data["stage_instance_id"]
    if sid in (None, ""):
        notice.stage_instance_id = None
        return
    instance = db.session.get(StageInstance, sid)
    if instance is None or instance.case_id != notice.case_id or instance.tenant_id != notice.tenant_id:
        errors["stage_instance_id"] = "must reference a stage instance of the same case"
        return
    notice.stage_instance_id = instance.id


def advance_workflow_step(notice: StageNotice, to_step: str) -> None:
    """Move ``notice.workflow_step`` forward only; never backwards."""
    if NOTICE_WORKFLOW_STEPS.index(to_step) > NOTICE_WORKFLOW_STEPS.index(notice.workflow_step or "notice"):
        notice.workflow_step = to_step


def recompute_notice_status(notice: StageNotice) -> str:
    """Derive the notice status from its replies (Closed is sticky)."""
    if notice.status == NOTICE_CLOSED:
        return notice.status
    statuses = [r.filing_status for r in db.session.execute(
        select(StageReply).where(StageReply.notice_id == notice.id)
    ).scalars()]
    if any(s in REPLY_SUBMITTED for s in statuses):
        notice.status = NOTICE_REPLIED
        advance_workflow_step(notice, "reply")
    elif statuses:
        notice.status = NOTICE_REPLY_PENDING
    else:
        notice.status = NOTICE_RECEIVED
    return notice.status


# ── Reads ────────────────────────────────────────────────────────────────────


def get_notice(notice_id: int, *, tenant_id: int) -> StageNotice:
    return get_scoped(StageNotice, notice_id, tenant_id=tenant_id)


def list_notices(*, tenant_id: int, case_id: int | None = None, stage_instance_id: int | None = None):
    """Notices of a case or of one stage instance, oldest first."""
    if case_id is None and stage_instance_id is None:
        raise ValidationError("case_id or stage_instance_id is required")
    stmt = select(StageNotice).where(StageNotice.tenant_id == tenant_id)
    if case_id is not None:
        get_scoped(LegalCase, case_id, tenant_id=tenant_id)
        stmt = stmt.where(StageNotice.case_id == case_id)
    if stage_instance_id is not None:
        get_scoped(StageInstance, stage_instance_id, tenant_id=tenant_id)
        stmt = stmt.where(StageNotice.stage_instance_id == stage_instance_id)
    return db.session.execute(stmt.order_by(StageNotice.created_at, StageNotice.id)).scalars().all()


def get_due_date_status(notice: StageNotice, today: date | None = None) -> dict:
    """Days left until the reply due date, and a label for the UI."""
    today = today or date.today()
    if notice.due_date is None:
        return {"days_left": None, "is_overdue": False, "label": "No due date"}
    if notice.status in (NOTICE_REPLIED, NOTICE_CLOSED):
        return {"days_left": None, "is_overdue": False, "label": notice.status}
    days_left = (notice.due_date - today).days
    if days_left < 0:
        label = f"Overdue by {-days_left} day(s)"
    elif days_left == 0:
        label = "Due today"
    else:
        label = f"Due in {days_left} day(s)"
    return {"days_left": days_left, "is_overdue": days_left < 0, "label": label}


# ── Mutations ────────────────────────────────────────────────────────────────


def _build_notice(case: LegalCase, data: dict, actor: str) -> StageNotice:
    notice = StageNotice(
        tenant_id=case.tenant_id,
        case_id=case.id,
        status=NOTICE_RECEIVED,
        workflow_step="notice",
        documents=[],
        extra_metadata={},
        tax_applicable=True,
        interest_applicable=True,
        penalty_applicable=True,
        is_original=False,
        created_by=actor,
    )
    errors = {}
    _apply_fields(notice, data, errors)
    _check_stage_instance(notice, data, errors)
    if errors:
        raise ValidationError("Invalid notice", details=errors)
    return notice


def create_notice(
    case_id: int,
    data: dict,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
) -> StageNotice:
    with atomic():
        case = get_scoped(LegalCase, case_id, tenant_id=tenant_id)
        notice = _build_notice(case, data, actor)
        db.session.add(notice)
        db.session.flush()
        write_audit(
            entity_type="stage_notice", entity_id=notice.id, action="notice.create",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=case.id,
            diff={"notice_number": notice.notice_number, "stage_instance_id": notice.stage_instance_id,
                  "total_demand": str(notice.total_demand)},
        )
    logger.info(
        "Notice %s created on case %s", notice.id, case_id,
        extra={"tenant_id": tenant_id, "case_id": case_id,
               "stage_instance_id": notice.stage_instance_id, "actor": actor},
    )
    return notice


def update_notice(
    notice_id: int,
    data: dict,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
) -> StageNotice:
    with atomic():
        notice = get_scoped(StageNotice, notice_id, tenant_id=tenant_id)
        before = notice.to_dict()
        errors = {}
        _apply_fields(notice, data, errors)
        _check_stage_instance(notice, data, errors)
        if errors:
            raise ValidationError("Invalid notice", details=errors)
        db.session.flush()
        after = notice.to_dict()
        changes = {
            k: {"old": before[k], "new": after[k]}
            for k in after
            if k not in ("updated_at",) and before.get(k) != after[k]
        }
        write_audit(
            entity_type="stage_notice", entity_id=notice.id, action="notice.update",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=notice.case_id,
            diff=changes,
        )
    return notice


def delete_notice(
    notice_id: int,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
) -> None:
    """Delete a notice and its Draft replies; filed replies block the delete."""
    with atomic():
        notice = get_scoped(StageNotice, notice_id, tenant_id=tenant_id)
        replies = db.session.execute(
            select(StageReply).where(StageReply.notice_id == notice.id)
        ).scalars().all()
        filed = [r for r in replies if r.filing_status != REPLY_DRAFT]
        if filed:
            raise ConflictError(
                "StageNotice", notice.id,
                f"Notice has {len(filed)} filed repl{'y' if len(filed) == 1 else 'ies'}; "
                "filed replies cannot be orphaned",
                details={"reply_ids": [r.id for r in filed]},
            )
        for reply in replies:
            db.session.delete(reply)
        case_id = notice.case_id
        snapshot = notice.to_dict()
        db.session.delete(notice)
        db.session.flush()
        write_audit(
            entity_type="stage_notice", entity_id=notice_id, action="notice.delete",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=case_id,
            diff={"notice": snapshot, "draft_replies_deleted": [r.id for r in replies]},
        )
    logger.info(
        "Notice %s deleted (%d draft replies)", notice_id, len(replies),
        extra={"tenant_id": tenant_id, "case_id": case_id, "actor": actor},
    )


def ensure_original_notice(
    case_id: int,
    stage_instance_id: int,
    *,
    tenant_id: int,
    actor: str = "system",
) -> StageNotice | None:
    """Create the ``is_original`` notice from the case intake fields, once.

    Joins the caller's unit of work; returns the existing original notice if
    there is one, or None when the case carries no notice particulars.
    """
    case = get_scoped(LegalCase, case_id, tenant_id=tenant_id)
    existing = db.session.execute(
        select(StageNotice).where(StageNotice.case_id == case.id, StageNotice.is_original.is_(True))
    ).scalars().first()
    if existing is not None:
        return existing
    if not (case.notice_no or case.notice_date):
        return None

    due_date = case.reply_due_date
    if due_date and case.notice_date and due_date < case.notice_date:
        due_date = None
    with atomic():
        notice = StageNotice(
            tenant_id=case.tenant_id,
            case_id=case.id,
            stage_instance_id=stage_instance_id,
            notice_type=case.notice_type or "Original Notice",
            notice_number=case.notice_no,
            notice_date=case.notice_date,
            due_date=due_date,
            tax_amount=case.tax_demand,
            section_invoked=case.section_invoked,
            status=NOTICE_RECEIVED,
            workflow_step="notice",
            documents=[],
            extra_metadata={},
            is_original=True,
            created_by=actor,
        )
        db.session.add(notice)
        db.session.flush()
        write_audit(
            entity_type="stage_notice", entity_id=notice.id, action="notice.create",
            actor=actor, tenant_id=tenant_id, case_id=case.id,
            diff={"is_original": True, "notice_number": notice.notice_number},
        )
    return notice
