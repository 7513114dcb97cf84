"""
Lifecycle Orchestrator — the façade the HTTP layer and other callers use.

Each mutation below is one ``atomic()`` unit: the store, checklist and
workflow calls it makes join that unit, so either everything (closing the
old instance, opening the new one, the ledger row, checklist, steps, audit)
is committed or nothing is. Errors from the lower layers propagate
unchanged.

Usage:
    from caseflow.services import lifecycle_service

    state = lifecycle_service.get_current_state(case_id, tenant_id=1)
    lifecycle_service.advance_case(
        case_id, state["active_instance"]["id"], "Notice",
        tenant_id=1, actor="asha",
        expected_version=state["stage_version"],
    )
"""

import logging

from sqlalchemy import select

from caseflow.core.exceptions import ValidationError
from caseflow.models import db
from caseflow.models.audit import AuditLog
from caseflow.models.case import LegalCase
from caseflow.models.lifecycle import (
    APPROVAL_PENDING,
    STAGE_ORDER,
    TRANSITION_FORWARD,
    TRANSITION_REMAND,
    TRANSITION_SEND_BACK,
    TRANSITION_TYPES,
)
from caseflow.services import stage_notice_service, stage_store, stage_workflow_service
from caseflow.services.helpers.scoped_queries import get_scoped
from caseflow.services.helpers.unit_of_work import atomic

logger = logging.getLogger(__name__)


def _move_result(instance, transition) -> dict:
    return {
        "stage_instance": instance.to_dict(),
        "transition": transition.to_dict(include_approvals=True),
        "stage_version": instance.legal_case.stage_version,
    }


# ── Queries ──────────────────────────────────────────────────────────────────


def get_current_state(case_id: int, *, tenant_id: int) -> dict:
    """Where the case stands: active instance, its workflow, and legal moves."""
    case = get_scoped(LegalCase, case_id, tenant_id=tenant_id)
    active = stage_store.get_active_instance(case.id, tenant_id=tenant_id)
    state = {
        "case": case.to_dict(),
        "current_stage_key": case.current_stage_key,
        "stage_version": case.stage_version,
        "stage_order": list(STAGE_ORDER),
        "active_instance": None,
        "workflow": None,
        "available_stages": {t: [] for t in TRANSITION_TYPES},
        "pending_approval": None,
    }
    if active is None:
        return state

    entry = stage_store.incoming_transition(active)
    state["active_instance"] = active.to_dict()
    state["workflow"] = stage_workflow_service.get_summary(active.id, tenant_id=tenant_id)
    state["available_stages"] = {
        t: stage_store.get_available_stages(active.stage_key, t) for t in TRANSITION_TYPES
    }
    if entry is not None and entry.approval_status == APPROVAL_PENDING:
        state["pending_approval"] = entry.to_dict(include_approvals=True)
    return state


def get_stage_history(case_id: int, *, tenant_id: int) -> list[dict]:
    return [i.to_dict() for i in stage_store.get_stage_history(case_id, tenant_id=tenant_id)]


def get_transition_ledger(case_id: int, *, tenant_id: int) -> list[dict]:
    return stage_store.get_transition_ledger(case_id, tenant_id=tenant_id)


def get_audit_trail(case_id: int, *, tenant_id: int, entity_type: str | None = None):
    """Audit rows of one case, newest first, as a query for pagination."""
    get_scoped(LegalCase, case_id, tenant_id=tenant_id)
    stmt = select(AuditLog).where(AuditLog.case_id == case_id, AuditLog.tenant_id == tenant_id)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    return stmt.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())


def get_workflow_state(stage_instance_id: int, *, tenant_id: int) -> dict:
    return stage_workflow_service.get_state(stage_instance_id, tenant_id=tenant_id)


def get_available_stages(case_id: int, transition_type: str, *, tenant_id: int) -> list[str]:
    if transition_type not in TRANSITION_TYPES:
        raise ValidationError(
            f"Unknown transition type '{transition_type}'",
            details={"type": f"must be one of {list(TRANSITION_TYPES)}"},
        )
    case = get_scoped(LegalCase, case_id, tenant_id=tenant_id)
    active = stage_store.get_active_instance(case.id, tenant_id=tenant_id)
    if active is None:
        return []
    return stage_store.get_available_stages(active.stage_key, transition_type)


# ── Mutations ────────────────────────────────────────────────────────────────


def start_case_lifecycle(
    case_id: int,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
    stage_key: str = STAGE_ORDER[0],
    comments: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """Open the first stage and file the case's intake notice against it."""
    with atomic():
        instance, transition = stage_store.start_lifecycle(
            case_id, tenant_id=tenant_id, actor=actor, actor_role=actor_role,
            stage_key=stage_key, comments=comments, expected_version=expected_version,
        )
        notice = stage_notice_service.ensure_original_notice(
            case_id, instance.id, tenant_id=tenant_id, actor=actor,
        )
    result = _move_result(instance, transition)
    result["original_notice"] = notice.to_dict() if notice else None
    return result


def advance_case(
    case_id: int,
    from_instance_id: int,
    to_stage_key: str,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
    reason_text: str | None = None,
    comments: str | None = None,
    attachments: list | None = None,
    checklist_overrides: list | None = None,
    requires_approval: bool | None = None,
    expected_version: int | None = None,
) -> dict:
    with atomic():
        instance, transition = stage_store.advance(
            case_id, from_instance_id, to_stage_key,
            tenant_id=tenant_id, actor=actor, actor_role=actor_role,
            reason_text=reason_text, comments=comments, attachments=attachments,
            checklist_overrides=checklist_overrides, requires_approval=requires_approval,
            expected_version=expected_version,
        )
    return _move_result(instance, transition)


def remand_case(
    case_id: int,
    from_instance_id: int,
    to_stage_key: str,
    *,
    tenant_id: int,
    actor: str,
    reason_enum: str,
    order_meta: dict | None = None,
    actor_role: str | None = None,
    reason_text: str | None = None,
    comments: str | None = None,
    attachments: list | None = None,
    requires_approval: bool | None = None,
    expected_version: int | None = None,
) -> dict:
    with atomic():
        instance, transition = stage_store.remand(
            case_id, from_instance_id, to_stage_key,
            tenant_id=tenant_id, actor=actor, actor_role=actor_role,
            reason_enum=reason_enum, reason_text=reason_text, order_meta=order_meta,
            comments=comments, attachments=attachments,
            requires_approval=requires_approval, expected_version=expected_version,
        )
    return _move_result(instance, transition)


def send_back_case(
    case_id: int,
    from_instance_id: int,
    to_stage_key: str,
    *,
    tenant_id: int,
    actor: str,
    reason_enum: str,
    actor_role: str | None = None,
    reason_text: str | None = None,
    comments: str | None = None,
    attachments: list | None = None,
    requires_approval: bool | None = None,
    expected_version: int | None = None,
) -> dict:
    with atomic():
        instance, transition = stage_store.send_back(
            case_id, from_instance_id, to_stage_key,
            tenant_id=tenant_id, actor=actor, actor_role=actor_role,
            reason_enum=reason_enum, reason_text=reason_text,
            comments=comments, attachments=attachments,
            requires_approval=requires_approval, expected_version=expected_version,
        )
    return _move_result(instance, transition)


_MOVES = {
    TRANSITION_FORWARD: advance_case,
    TRANSITION_SEND_BACK: send_back_case,
    TRANSITION_REMAND: remand_case,
}


def move_case(transition_type: str, case_id: int, from_instance_id: int, to_stage_key: str, **kwargs) -> dict:
    """Dispatch a move by transition type."""
    try:
        handler = _MOVES[transition_type]
    except KeyError:
        raise ValidationError(
            f"Unknown transition type '{transition_type}'",
            details={"type": f"must be one of {list(TRANSITION_TYPES)}"},
        ) from None
    return handler(case_id, from_instance_id, to_stage_key, **kwargs)


def complete_workflow_step(stage_instance_id: int, step_key: str, **kwargs) -> dict:
    with atomic():
        return stage_workflow_service.complete_step(stage_instance_id, step_key, **kwargs)


def skip_workflow_step(stage_instance_id: int, step_key: str, reason: str, **kwargs) -> dict:
    with atomic():
        return stage_workflow_service.skip_step(stage_instance_id, step_key, reason, **kwargs)
