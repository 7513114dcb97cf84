"""
Stage Instance Store & Transition Ledger.

Owns the append-only (case, stage, cycle) history and every move between
stage instances:

    start_lifecycle   first instance of a case, no from-instance
    advance           Forward to a later stage; gated on the checklist
    send_back         internal correction to a strictly earlier stage
    remand            authority order back to the same or an earlier stage

Every move runs as one unit under the case claim (see
``helpers.unit_of_work``): close the old instance, create the new one with
cycle_no = max+1, record the transition, instantiate the checklist, seed the
four workflow steps, update ``cases.current_stage_key`` and write the audit
row. A second caller that read the same Active instance loses the claim and
gets ConflictError.

Usage:
    from caseflow.services import stage_store

    instance, transition = stage_store.advance(
        case_id, from_instance_id, "Notice",
        tenant_id=1, actor="asha", actor_role="Partner",
    )
"""

import logging
from datetime import date, datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import func, select

from caseflow.core.exceptions import BlockedError, ConflictError, InvalidStateError, ValidationError
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.case import LegalCase
from caseflow.models.lifecycle import (
    APPROVAL_NOT_REQUIRED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    CLOSING_STATUS,
    INSTANCE_ACTIVE,
    REASON_ENUMS,
    SATISFIED_CHECK_STATUSES,
    STAGE_ORDER,
    TRANSITION_FORWARD,
    TRANSITION_REMAND,
    TRANSITION_SEND_BACK,
    TRANSITION_TYPES,
    StageInstance,
    StageTransition,
    StageTransitionApproval,
    stage_index,
)
from caseflow.models.stage_workflow import (
    STEP_IN_PROGRESS,
    STEP_PENDING,
    WORKFLOW_STEPS,
    StageWorkflowStep,
)
from caseflow.services import checklist_service
from caseflow.services.helpers.scoped_queries import get_scoped
from caseflow.services.helpers.unit_of_work import atomic, claim_case, load_case_for_update

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_REQUIRED_TYPES = (TRANSITION_SEND_BACK, TRANSITION_REMAND)

_AUDIT_ACTION = {
    TRANSITION_FORWARD: "lifecycle.forward",
    TRANSITION_SEND_BACK: "lifecycle.send_back",
    TRANSITION_REMAND: "lifecycle.remand",
}


def _utcnow():
    return datetime.now(timezone.utc)


# ── Stage vocabulary queries ─────────────────────────────────────────────────


def get_available_stages(stage_key: str, transition_type: str) -> list[str]:
    """Legal targets for a move of *transition_type* out of *stage_key*."""
    idx = stage_index(stage_key)
    if idx < 0:
        return []
    if transition_type == TRANSITION_FORWARD:
        return STAGE_ORDER[idx + 1:]
    if transition_type == TRANSITION_SEND_BACK:
        return STAGE_ORDER[:idx]
    if transition_type == TRANSITION_REMAND:
        return STAGE_ORDER[:idx + 1]
    return []


def approval_required_types() -> tuple[str, ...]:
    if has_app_context():
        return tuple(current_app.config.get(
            "LIFECYCLE_APPROVAL_REQUIRED_TYPES", DEFAULT_APPROVAL_REQUIRED_TYPES,
        ))
    return DEFAULT_APPROVAL_REQUIRED_TYPES


def _parse_date(value, field, errors):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        errors[field] = "must be an ISO date (YYYY-MM-DD)"
        return None


def validate_move(
    transition_type: str,
    from_stage_key: str,
    to_stage_key: str,
    *,
    reason_enum: str | None = None,
    reason_text: str | None = None,
    order_meta: dict | None = None,
) -> dict:
    """Check a move request and return the normalised order metadata.

    Raises ValidationError listing every unmet field.
    """
    errors = {}
    if transition_type not in TRANSITION_TYPES:
        errors["type"] = f"must be one of {list(TRANSITION_TYPES)}"
    if to_stage_key not in STAGE_ORDER:
        errors["to_stage_key"] = f"unknown stage '{to_stage_key}'"
    elif transition_type in TRANSITION_TYPES and to_stage_key not in get_available_stages(from_stage_key, transition_type):
        if transition_type == TRANSITION_FORWARD:
            errors["to_stage_key"] = f"Forward move must target a stage after {from_stage_key}"
        elif transition_type == TRANSITION_SEND_BACK:
            errors["to_stage_key"] = f"Send Back must target a stage before {from_stage_key}"
        else:
            errors["to_stage_key"] = f"Remand must target {from_stage_key} or an earlier stage"

    if transition_type in (TRANSITION_SEND_BACK, TRANSITION_REMAND) and not reason_enum:
        errors["reason_enum"] = f"required for {transition_type}"
    elif reason_enum and reason_enum not in REASON_ENUMS:
        errors["reason_enum"] = f"must be one of {list(REASON_ENUMS)}"
    elif reason_enum == "Other" and not (reason_text or "").strip():
        errors["reason_text"] = "required when reason_enum is 'Other'"

    meta = dict(order_meta or {})
    order = {
        "order_no": (meta.get("order_no") or "").strip() or None,
        "order_date": _parse_date(meta.get("order_date"), "order_date", errors),
        "order_document_id": meta.get("order_document_id") or None,
    }
    if errors:
        raise ValidationError(f"Invalid {transition_type} request", details=errors)
    return order


# ── Reads ────────────────────────────────────────────────────────────────────


def get_active_instance(case_id: int, *, tenant_id: int) -> StageInstance | None:
    return db.session.execute(
        select(StageInstance).where(
            StageInstance.case_id == case_id,
            StageInstance.tenant_id == tenant_id,
            StageInstance.status == INSTANCE_ACTIVE,
        )
    ).scalar_one_or_none()


def incoming_transition(instance: StageInstance) -> StageTransition | None:
    return db.session.execute(
        select(StageTransition).where(StageTransition.to_stage_instance_id == instance.id)
    ).scalar_one_or_none()


def _has_outgoing_transition(instance: StageInstance) -> bool:
    return db.session.execute(
        select(func.count(StageTransition.id)).where(
            StageTransition.from_stage_instance_id == instance.id,
            StageTransition.approval_status != APPROVAL_REJECTED,
        )
    ).scalar() > 0


def get_stage_history(case_id: int, *, tenant_id: int) -> list[StageInstance]:
    """Every stage visit of the case, oldest first."""
    get_scoped(LegalCase, case_id, tenant_id=tenant_id)
    return db.session.execute(
        select(StageInstance)
        .where(StageInstance.case_id == case_id, StageInstance.tenant_id == tenant_id)
        .order_by(StageInstance.started_at, StageInstance.id)
    ).scalars().all()


def get_transition_ledger(case_id: int, *, tenant_id: int) -> list[dict]:
    """Every transition of the case with its approval thread, oldest first."""
    get_scoped(LegalCase, case_id, tenant_id=tenant_id)
    transitions = db.session.execute(
        select(StageTransition)
        .where(StageTransition.case_id == case_id, StageTransition.tenant_id == tenant_id)
        .order_by(StageTransition.created_at, StageTransition.id)
    ).scalars().all()
    return [t.to_dict(include_approvals=True) for t in transitions]


# ── Instance creation & closing ──────────────────────────────────────────────


def next_cycle_no(case_id: int, stage_key: str) -> int:
    current = db.session.execute(
        select(func.max(StageInstance.cycle_no)).where(
            StageInstance.case_id == case_id,
            StageInstance.stage_key == stage_key,
        )
    ).scalar()
    return (current or 0) + 1


def _seed_workflow_steps(instance: StageInstance) -> None:
    for i, step_key in enumerate(WORKFLOW_STEPS):
        db.session.add(StageWorkflowStep(
            tenant_id=instance.tenant_id,
            stage_instance_id=instance.id,
            step_key=step_key,
            status=STEP_IN_PROGRESS if i == 0 else STEP_PENDING,
        ))


def create_instance(case: LegalCase, stage_key: str, *, actor: str) -> StageInstance:
    """Insert the next cycle of *stage_key* plus its checklist and steps.

    The caller holds the case claim and has already closed the previous
    Active instance.
    """
    instance = StageInstance(
        tenant_id=case.tenant_id,
        case_id=case.id,
        stage_key=stage_key,
        cycle_no=next_cycle_no(case.id, stage_key),
        status=INSTANCE_ACTIVE,
        started_at=_utcnow(),
        created_by=actor,
    )
    db.session.add(instance)
    db.session.flush()
    checklist_service.instantiate_template(instance)
    _seed_workflow_steps(instance)
    db.session.flush()
    case.current_stage_key = stage_key
    return instance


def close_instance(instance: StageInstance, status: str) -> None:
    instance.status = status
    instance.ended_at = _utcnow()
    # The partial unique index allows one Active row per case; the old row
    # must leave Active before the new one is inserted.
    db.session.flush()


def _checklist_warnings(instance: StageInstance) -> list[dict]:
    """Required items left unmet when a Send Back / Remand closes the stage."""
    return [
        {"item_key": i.item_key, "label": i.label, "status": i.status, "detail": i.detail}
        for i in instance.checklist_items
        if i.required and i.status not in SATISFIED_CHECK_STATUSES
    ]


# ── Moves ────────────────────────────────────────────────────────────────────


def check_from_instance(instance: StageInstance) -> None:
    """The from-instance must be Active and not awaiting approval of its own entry."""
    if not instance.is_active:
        if _has_outgoing_transition(instance):
            raise ConflictError(
                "StageInstance", instance.id,
                f"{instance.stage_key}#{instance.cycle_no} was already moved by another request "
                f"(status={instance.status}); re-fetch and retry",
            )
        raise InvalidStateError(
            "StageInstance", instance.id, instance.status,
            "Only the Active stage instance can be moved",
        )
    entry = incoming_transition(instance)
    if entry is not None and entry.approval_status == APPROVAL_PENDING:
        raise BlockedError(
            f"Stage {instance.stage_key}#{instance.cycle_no} is awaiting approval",
            blocking_reasons=[
                f"Transition #{entry.id} ({entry.transition_type} from {entry.from_stage_key}) "
                "is pending approval"
            ],
        )


def apply_move(
    case: LegalCase,
    from_instance: StageInstance,
    to_stage_key: str,
    transition_type: str,
    *,
    actor: str,
    actor_role: str | None = None,
    reason_enum: str | None = None,
    reason_text: str | None = None,
    order: dict | None = None,
    comments: str | None = None,
    attachments: list | None = None,
    validation_warnings: list | None = None,
    requires_approval: bool | None = None,
) -> tuple[StageInstance, StageTransition]:
    """Close *from_instance*, open the target cycle and record the edge.

    The caller holds the case claim and has validated the request.
    """
    order = order or {}
    needs_approval = bool(requires_approval) or transition_type in approval_required_types()

    close_instance(from_instance, CLOSING_STATUS[transition_type])
    new_instance = create_instance(case, to_stage_key, actor=actor)

    transition = StageTransition(
        tenant_id=case.tenant_id,
        case_id=case.id,
        from_stage_instance_id=from_instance.id,
        to_stage_instance_id=new_instance.id,
        from_stage_key=from_instance.stage_key,
        to_stage_key=to_stage_key,
        transition_type=transition_type,
        reason_enum=reason_enum,
        reason_text=reason_text,
        order_no=order.get("order_no"),
        order_date=order.get("order_date"),
        order_document_id=order.get("order_document_id"),
        comments=comments,
        attachments=list(attachments or []),
        validation_warnings=list(validation_warnings or []),
        requires_approval=needs_approval,
        approval_status=APPROVAL_PENDING if needs_approval else APPROVAL_NOT_REQUIRED,
        is_confirmed=not needs_approval,
        actor=actor,
        actor_role=actor_role,
        created_at=_utcnow(),
    )
    db.session.add(transition)
    db.session.flush()

    if needs_approval:
        db.session.add(StageTransitionApproval(
            tenant_id=case.tenant_id,
            transition_id=transition.id,
            action="request",
            actor=actor,
            actor_role=actor_role,
            comments=comments,
        ))

    write_audit(
        entity_type="stage_transition",
        entity_id=transition.id,
        action=_AUDIT_ACTION[transition_type],
        actor=actor,
        actor_role=actor_role,
        tenant_id=case.tenant_id,
        case_id=case.id,
        diff={
            "from": f"{from_instance.stage_key}#{from_instance.cycle_no}",
            "to": f"{new_instance.stage_key}#{new_instance.cycle_no}",
            "from_status": from_instance.status,
            "reason_enum": reason_enum,
            "reason_text": reason_text,
            "order_no": order.get("order_no"),
            "requires_approval": needs_approval,
            "validation_warnings": transition.validation_warnings,
        },
    )
    logger.info(
        "%s %s#%s → %s#%s (case %s)",
        transition_type, from_instance.stage_key, from_instance.cycle_no,
        new_instance.stage_key, new_instance.cycle_no, case.id,
        extra={"tenant_id": case.tenant_id, "case_id": case.id,
               "stage_instance_id": new_instance.id, "transition_id": transition.id,
               "actor": actor},
    )
    return new_instance, transition


def _move(
    transition_type: str,
    case_id: int,
    from_instance_id: int,
    to_stage_key: str,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
    reason_enum: str | None = None,
    reason_text: str | None = None,
    order_meta: dict | None = None,
    comments: str | None = None,
    attachments: list | None = None,
    checklist_overrides: list | None = None,
    requires_approval: bool | None = None,
    expected_version: int | None = None,
) -> tuple[StageInstance, StageTransition]:
    if not actor:
        raise ValidationError("actor is required", details={"actor": "required"})
    if from_instance_id is None:
        raise ValidationError(
            "from_stage_instance_id is required", details={"from_stage_instance_id": "required"},
        )
    from_instance = get_scoped(StageInstance, from_instance_id, tenant_id=tenant_id, case_id=case_id)
    order = validate_move(
        transition_type, from_instance.stage_key, to_stage_key,
        reason_enum=reason_enum, reason_text=reason_text, order_meta=order_meta,
    )

    evidence = None
    if transition_type == TRANSITION_FORWARD:
        evidence = checklist_service.collect_document_evidence(from_instance)

    with atomic():
        case = load_case_for_update(case_id, tenant_id=tenant_id)
        db.session.refresh(from_instance)
        check_from_instance(from_instance)
        claim_case(case, expected_version=expected_version)

        warnings = []
        if transition_type == TRANSITION_FORWARD:
            checklist_service.evaluate_instance(from_instance, persist=True, evidence=evidence)
            warnings = checklist_service.apply_overrides(from_instance, checklist_overrides, actor=actor)
            verdict = checklist_service.evaluate_instance(from_instance, persist=True, evidence=evidence)
            if not verdict["can_close"]:
                raise BlockedError(
                    f"Stage {from_instance.stage_key}#{from_instance.cycle_no} cannot close",
                    blocking_reasons=verdict["blocking_reasons"],
                )
        else:
            warnings = _checklist_warnings(from_instance)

        return apply_move(
            case, from_instance, to_stage_key, transition_type,
            actor=actor, actor_role=actor_role,
            reason_enum=reason_enum, reason_text=(reason_text or None),
            order=order, comments=comments, attachments=attachments,
            validation_warnings=warnings, requires_approval=requires_approval,
        )


def advance(case_id, from_instance_id, to_stage_key, *, reason_text=None, reason_enum=None, **kwargs):
    """Forward move. The from-instance's checklist must allow closing."""
    return _move(
        TRANSITION_FORWARD, case_id, from_instance_id, to_stage_key,
        reason_enum=reason_enum, reason_text=reason_text, **kwargs,
    )


def send_back(case_id, from_instance_id, to_stage_key, *, reason_enum, reason_text=None, **kwargs):
    """Internal correction to a strictly earlier stage. Old instance → Remanded."""
    return _move(
        TRANSITION_SEND_BACK, case_id, from_instance_id, to_stage_key,
        reason_enum=reason_enum, reason_text=reason_text, **kwargs,
    )


def remand(case_id, from_instance_id, to_stage_key, *, reason_enum, order_meta=None, reason_text=None, **kwargs):
    """Authority remand to the same or an earlier stage. Old instance → Remanded."""
    return _move(
        TRANSITION_REMAND, case_id, from_instance_id, to_stage_key,
        reason_enum=reason_enum, reason_text=reason_text, order_meta=order_meta, **kwargs,
    )


def start_lifecycle(
    case_id: int,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
    stage_key: str = STAGE_ORDER[0],
    comments: str | None = None,
    expected_version: int | None = None,
) -> tuple[StageInstance, StageTransition]:
    """Open cycle 1 of the first stage with a from-less Forward transition."""
    if not actor:
        raise ValidationError("actor is required", details={"actor": "required"})
    if stage_key not in STAGE_ORDER:
        raise ValidationError(f"Unknown stage '{stage_key}'", details={"stage_key": "unknown stage"})

    with atomic():
        case = load_case_for_update(case_id, tenant_id=tenant_id)
        active = get_active_instance(case_id, tenant_id=tenant_id)
        if active is not None:
            raise InvalidStateError(
                "LegalCase", case.id, f"{active.stage_key}#{active.cycle_no}",
                "Lifecycle already started; the case has an Active stage instance",
            )
        claim_case(case, expected_version=expected_version)

        instance = create_instance(case, stage_key, actor=actor)
        transition = StageTransition(
            tenant_id=tenant_id,
            case_id=case.id,
            from_stage_instance_id=None,
            to_stage_instance_id=instance.id,
            from_stage_key=None,
            to_stage_key=stage_key,
            transition_type=TRANSITION_FORWARD,
            comments=comments,
            attachments=[],
            validation_warnings=[],
            requires_approval=False,
            approval_status=APPROVAL_NOT_REQUIRED,
            is_confirmed=True,
            actor=actor,
            actor_role=actor_role,
            created_at=_utcnow(),
        )
        db.session.add(transition)
        db.session.flush()

        write_audit(
            entity_type="stage_transition", entity_id=transition.id, action="lifecycle.start",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=case.id,
            diff={"to": f"{stage_key}#{instance.cycle_no}"},
        )
    logger.info(
        "Lifecycle started at %s#%s (case %s)", stage_key, instance.cycle_no, case_id,
        extra={"tenant_id": tenant_id, "case_id": case_id,
               "stage_instance_id": instance.id, "transition_id": transition.id, "actor": actor},
    )
    return instance, transition
