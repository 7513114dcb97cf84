"""
Approval Workflow — second-person sign-off on stage transitions.

A transition created with requires_approval=True starts unconfirmed with
approval_status='pending' and a 'request' entry in its thread. From there:

    approve   is_confirmed=True; reason / order metadata / attachments freeze
    reject    the move never took effect: the new stage instance becomes
              Superseded, the old one is Active again and the case's
              current_stage_key is restored; a completed closure step on
              the reopened instance goes back to In Progress
    comment   appends to the thread; never changes confirmation

Thread rows are immutable. A decision is serialized per transition by a
compare-and-set on approval_status, so approve and reject can never both win.
"""

import logging
from datetime import date, datetime, timezone

from sqlalchemy import select, update

from caseflow.core.exceptions import ConflictError, InvalidStateError, ValidationError
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.lifecycle import (
    APPROVAL_APPROVED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    INSTANCE_ACTIVE,
    INSTANCE_SUPERSEDED,
    REASON_ENUMS,
    TERMINAL_APPROVAL_ACTIONS,
    StageTransition,
    StageTransitionApproval,
)
from caseflow.models.stage_workflow import (
    STEP_CLOSURE,
    STEP_COMPLETED,
    STEP_IN_PROGRESS,
    StageWorkflowStep,
)
from caseflow.services.helpers.scoped_queries import get_scoped
from caseflow.services.helpers.unit_of_work import atomic, claim_case, load_case_for_update

logger = logging.getLogger(__name__)

AMENDABLE_FIELDS = (
    "reason_enum", "reason_text", "comments", "attachments",
    "order_no", "order_date", "order_document_id",
)


def _utcnow():
    return datetime.now(timezone.utc)


def _has_terminal_action(transition: StageTransition) -> bool:
    return any(a.action in TERMINAL_APPROVAL_ACTIONS for a in transition.approvals)


def _append(transition, action, actor, actor_role, comments):
    entry = StageTransitionApproval(
        tenant_id=transition.tenant_id,
        transition_id=transition.id,
        action=action,
        actor=actor,
        actor_role=actor_role,
        comments=comments,
        created_at=_utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


# ── Reads ────────────────────────────────────────────────────────────────────


def get_approval_thread(transition_id: int, *, tenant_id: int) -> dict:
    transition = get_scoped(StageTransition, transition_id, tenant_id=tenant_id)
    return {
        "transition": transition.to_dict(),
        "approvals": [a.to_dict() for a in transition.approvals],
    }


def list_pending_approvals(*, tenant_id: int, case_id: int | None = None) -> list[StageTransition]:
    stmt = select(StageTransition).where(
        StageTransition.tenant_id == tenant_id,
        StageTransition.approval_status == APPROVAL_PENDING,
    )
    if case_id is not None:
        stmt = stmt.where(StageTransition.case_id == case_id)
    return db.session.execute(
        stmt.order_by(StageTransition.created_at, StageTransition.id)
    ).scalars().all()


# ── Actions ──────────────────────────────────────────────────────────────────


def request_approval(
    transition_id: int,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
    comments: str | None = None,
) -> StageTransitionApproval:
    """Append a 'request' (or re-request) to an undecided transition's thread."""
    with atomic():
        transition = get_scoped(StageTransition, transition_id, tenant_id=tenant_id)
        if not transition.requires_approval:
            raise InvalidStateError(
                "StageTransition", transition.id, transition.approval_status,
                "This transition does not require approval",
            )
        if _has_terminal_action(transition) or transition.approval_status != APPROVAL_PENDING:
            raise InvalidStateError(
                "StageTransition", transition.id, transition.approval_status,
                "Approval has already been decided",
            )
        entry = _append(transition, "request", actor, actor_role, comments)
        write_audit(
            entity_type="stage_transition", entity_id=transition.id, action="approval.request",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=transition.case_id,
            diff={"comments": comments},
        )
    logger.info(
        "Approval requested for transition %s", transition.id,
        extra={"tenant_id": tenant_id, "case_id": transition.case_id,
               "transition_id": transition.id, "actor": actor},
    )
    return entry


def _reopen_closure_step(instance) -> None:
    """A reopened stage is not closed: its closure step goes back to In Progress."""
    step = db.session.execute(
        select(StageWorkflowStep).where(
            StageWorkflowStep.stage_instance_id == instance.id,
            StageWorkflowStep.step_key == STEP_CLOSURE,
        )
    ).scalar_one_or_none()
    if step is not None and step.status == STEP_COMPLETED:
        step.status = STEP_IN_PROGRESS
        step.completed_by = None
        step.completed_at = None


def _revert_move(transition: StageTransition) -> None:
    """Undo a rejected move: supersede the new instance, reopen the old one."""
    case = load_case_for_update(transition.case_id, tenant_id=transition.tenant_id)
    claim_case(case)
    new_instance = transition.to_instance
    old_instance = transition.from_instance
    if new_instance.status != INSTANCE_ACTIVE:
        raise ConflictError(
            "StageInstance", new_instance.id,
            f"{new_instance.stage_key}#{new_instance.cycle_no} is {new_instance.status}; "
            "the move can no longer be reverted",
        )
    new_instance.status = INSTANCE_SUPERSEDED
    new_instance.ended_at = _utcnow()
    # One Active row per case: the superseded row must be written first.
    db.session.flush()
    if old_instance is not None:
        old_instance.status = INSTANCE_ACTIVE
        old_instance.ended_at = None
        _reopen_closure_step(old_instance)
        case.current_stage_key = old_instance.stage_key
    else:
        case.current_stage_key = None
    db.session.flush()


def decide(
    transition_id: int,
    approve: bool,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
    comments: str | None = None,
) -> StageTransition:
    """Approve or reject a pending transition. Exactly one decision wins."""
    action = "approve" if approve else "reject"
    with atomic():
        transition = get_scoped(StageTransition, transition_id, tenant_id=tenant_id)
        if not transition.requires_approval:
            raise InvalidStateError(
                "StageTransition", transition.id, transition.approval_status,
                "This transition does not require approval",
            )
        if actor == transition.actor:
            raise ValidationError(
                "The approver must be a different person from the one who made the move",
                details={"actor": "must differ from the transition's actor"},
            )
        if transition.approval_status != APPROVAL_PENDING:
            raise ConflictError(
                "StageTransition", transition.id,
                f"Approval already decided ({transition.approval_status})",
            )

        result = db.session.execute(
            update(StageTransition)
            .where(
                StageTransition.id == transition.id,
                StageTransition.approval_status == APPROVAL_PENDING,
            )
            .values(approval_status=APPROVAL_APPROVED if approve else APPROVAL_REJECTED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "StageTransition", transition.id, "Another approver decided this transition first",
            )
        db.session.refresh(transition)

        if approve:
            transition.is_confirmed = True
            transition.approved_by = actor
            transition.approved_at = _utcnow()
        else:
            _revert_move(transition)
        db.session.flush()

        _append(transition, action, actor, actor_role, comments)
        write_audit(
            entity_type="stage_transition", entity_id=transition.id, action=f"approval.{action}",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=transition.case_id,
            diff={
                "approval_status": {"old": APPROVAL_PENDING, "new": transition.approval_status},
                "is_confirmed": transition.is_confirmed,
                "comments": comments,
            },
        )
    logger.info(
        "Transition %s %s by %s", transition.id, transition.approval_status, actor,
        extra={"tenant_id": tenant_id, "case_id": transition.case_id,
               "transition_id": transition.id, "actor": actor},
    )
    return transition


def add_comment(
    transition_id: int,
    comments: str,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
) -> StageTransitionApproval:
    if not (comments or "").strip():
        raise ValidationError("Comment text is required", details={"comments": "required"})
    with atomic():
        transition = get_scoped(StageTransition, transition_id, tenant_id=tenant_id)
        entry = _append(transition, "comment", actor, actor_role, comments.strip())
        write_audit(
            entity_type="stage_transition", entity_id=transition.id, action="approval.comment",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=transition.case_id,
            diff={"comments": entry.comments},
        )
    return entry


def amend_transition(
    transition_id: int,
    data: dict,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
) -> StageTransition:
    """Correct reason / order metadata / comments / attachments before confirmation."""
    unknown = sorted(set(data) - set(AMENDABLE_FIELDS))
    if unknown:
        raise ValidationError(
            "Only reason, order metadata, comments and attachments can be amended",
            details={field: "not amendable" for field in unknown},
        )
    with atomic():
        transition = get_scoped(StageTransition, transition_id, tenant_id=tenant_id)
        if transition.is_confirmed or transition.approval_status != APPROVAL_PENDING:
            raise InvalidStateError(
                "StageTransition", transition.id, transition.approval_status,
                "A confirmed or decided transition cannot be amended; record a new transition instead",
            )

        errors = {}
        if "reason_enum" in data and data["reason_enum"] not in REASON_ENUMS:
            errors["reason_enum"] = f"must be one of {list(REASON_ENUMS)}"
        if "attachments" in data and not isinstance(data["attachments"], list):
            errors["attachments"] = "must be a list of document references"
        if errors:
            raise ValidationError("Invalid amendment", details=errors)

        before = transition.to_dict()
        for field in AMENDABLE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field in ("order_no", "order_date") and not value:
                value = None
            elif field == "order_date" and not hasattr(value, "isoformat"):
                try:
                    value = date.fromisoformat(str(value))
                except ValueError as exc:
                    raise ValidationError(
                        "Invalid amendment", details={"order_date": "must be an ISO date"},
                    ) from exc
            if field == "attachments":
                value = list(value)
            setattr(transition, field, value)
        db.session.flush()
        after = transition.to_dict()
        write_audit(
            entity_type="stage_transition", entity_id=transition.id, action="transition.amend",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=transition.case_id,
            diff={k: {"old": before[k], "new": after[k]} for k in after if before.get(k) != after[k]},
        )
    logger.info(
        "Transition %s amended", transition.id,
        extra={"tenant_id": tenant_id, "case_id": transition.case_id,
               "transition_id": transition.id, "actor": actor},
    )
    return transition
