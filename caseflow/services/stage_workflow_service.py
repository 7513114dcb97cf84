"""
Micro-Workflow Tracker — the four steps inside one stage instance.

    notices → reply → hearings → closure

Step rows are seeded when the instance is created (notices In Progress,
the rest Pending). The state returned to callers is always derived from
those rows plus live counts of notices, replies and hearings; nothing is
cached.

Completion rules (BlockedError, with the reasons spelled out):
    any step   every earlier step is Completed or Skipped
    notices    at least one notice on the stage
    reply      no notice still Received / Reply Pending
    hearings   at least one hearing (or skip the step)
    closure    the checklist allows closing

Completing closure closes the stage instance and, when there is a next
stage, advances the case to it in the same unit of work.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from caseflow.core.exceptions import BlockedError, InvalidStateError, ValidationError
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.lifecycle import (
    INSTANCE_COMPLETED,
    TRANSITION_FORWARD,
    StageInstance,
    next_stage_key,
)
from caseflow.models.stage_workflow import (
    NOTICE_AWAITING_REPLY,
    STEP_CLOSURE,
    STEP_COMPLETED,
    STEP_DONE,
    STEP_HEARINGS,
    STEP_IN_PROGRESS,
    STEP_LABELS,
    STEP_NOTICES,
    STEP_PENDING,
    STEP_REPLY,
    STEP_SKIPPED,
    WORKFLOW_STEPS,
    StageNotice,
    StageReply,
    StageWorkflowStep,
)
from caseflow.services import checklist_service, stage_store
from caseflow.services.helpers.scoped_queries import get_scoped
from caseflow.services.helpers.unit_of_work import atomic, claim_case, load_case_for_update

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


# ── Pure derivation ──────────────────────────────────────────────────────────


def derive_progress(step_statuses: dict[str, str]) -> dict:
    """current_step and overall_progress from ``{step_key: status}``.

    current_step is the first step not Completed / Skipped, or closure when
    every step is done.
    """
    current = next(
        (key for key in WORKFLOW_STEPS if step_statuses.get(key, STEP_PENDING) not in STEP_DONE),
        STEP_CLOSURE,
    )
    done = sum(1 for key in WORKFLOW_STEPS if step_statuses.get(key, STEP_PENDING) in STEP_DONE)
    return {
        "current_step": current,
        "completed_steps": done,
        "overall_progress": round(done / len(WORKFLOW_STEPS) * 100),
        "is_complete": done == len(WORKFLOW_STEPS),
    }


def ordering_blockers(step_statuses: dict[str, str], step_key: str) -> list[str]:
    """Reasons *step_key* cannot be completed yet because earlier steps are open."""
    reasons = []
    for key in WORKFLOW_STEPS[:WORKFLOW_STEPS.index(step_key)]:
        status = step_statuses.get(key, STEP_PENDING)
        if status not in STEP_DONE:
            reasons.append(
                f"Step '{key}' is {status}; it must be completed or skipped before '{step_key}'"
            )
    return reasons


# ── Live counts ──────────────────────────────────────────────────────────────


def _steps(instance: StageInstance) -> dict[str, StageWorkflowStep]:
    return {step.step_key: step for step in instance.workflow_steps}


def _notices(instance: StageInstance) -> list[StageNotice]:
    return db.session.execute(
        select(StageNotice)
        .where(StageNotice.stage_instance_id == instance.id)
        .order_by(StageNotice.created_at, StageNotice.id)
    ).scalars().all()


def _reply_count(instance: StageInstance) -> int:
    return db.session.execute(
        select(func.count(StageReply.id)).where(StageReply.stage_instance_id == instance.id)
    ).scalar() or 0


def _counts(instance: StageInstance) -> dict:
    notices = _notices(instance)
    return {
        "notices": len(notices),
        "replies": _reply_count(instance),
        "hearings": checklist_service.hearing_count(instance),
        "awaiting_reply": [n for n in notices if n.status in NOTICE_AWAITING_REPLY],
    }


def _last_activity(instance, steps, notices):
    stamps = [instance.started_at, instance.ended_at]
    stamps += [s.completed_at for s in steps.values()]
    stamps += [s.updated_at for s in steps.values()]
    stamps += [n.updated_at or n.created_at for n in notices]
    stamps = [s for s in stamps if s is not None]
    return max(stamps, key=_comparable).isoformat() if stamps else None


def _comparable(ts):
    # SQLite hands back naive datetimes for timezone-aware columns.
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


_COUNT_KEY = {STEP_NOTICES: "notices", STEP_REPLY: "replies", STEP_HEARINGS: "hearings"}


def _subtitle(step_key, counts):
    if step_key == STEP_NOTICES:
        return f"{counts['notices']} notice(s)"
    if step_key == STEP_REPLY:
        pending = len(counts["awaiting_reply"])
        return f"{counts['replies']} repl(ies), {pending} notice(s) awaiting reply"
    if step_key == STEP_HEARINGS:
        return f"{counts['hearings']} hearing(s)"
    return None


# ── State ────────────────────────────────────────────────────────────────────


def get_state(stage_instance_id: int, *, tenant_id: int) -> dict:
    """Side-effect-free workflow state of one stage instance."""
    instance = get_scoped(StageInstance, stage_instance_id, tenant_id=tenant_id)
    steps = _steps(instance)
    statuses = {key: step.status for key, step in steps.items()}
    counts = _counts(instance)
    progress = derive_progress(statuses)
    checklist = checklist_service.evaluate(instance.id, tenant_id=tenant_id, persist=False)
    entry = stage_store.incoming_transition(instance)

    timeline = []
    for key in WORKFLOW_STEPS:
        step = steps.get(key)
        timeline.append({
            "key": key,
            "label": STEP_LABELS[key],
            "status": step.status if step else STEP_PENDING,
            "count": counts[_COUNT_KEY[key]] if key in _COUNT_KEY else None,
            "subtitle": _subtitle(key, counts),
            "completed_by": step.completed_by if step else None,
            "completed_at": step.completed_at.isoformat() if step and step.completed_at else None,
            "notes": step.notes if step else None,
        })

    notices = _notices(instance)
    return {
        "stage_instance": instance.to_dict(),
        "is_active": instance.is_active,
        **progress,
        "steps": [s.to_dict() for s in steps.values()],
        "timeline": timeline,
        "notice_count": counts["notices"],
        "reply_count": counts["replies"],
        "hearing_count": counts["hearings"],
        "checklist": checklist,
        "can_close": checklist["can_close"],
        "approval_status": entry.approval_status if entry else None,
        "last_activity": _last_activity(instance, steps, notices),
    }


def get_summary(stage_instance_id: int, *, tenant_id: int) -> dict:
    """Counts and progress only; no checklist evaluation."""
    instance = get_scoped(StageInstance, stage_instance_id, tenant_id=tenant_id)
    statuses = {step.step_key: step.status for step in instance.workflow_steps}
    counts = _counts(instance)
    return {
        "stage_instance_id": instance.id,
        "stage_key": instance.stage_key,
        "cycle_no": instance.cycle_no,
        **derive_progress(statuses),
        "notice_count": counts["notices"],
        "reply_count": counts["replies"],
        "hearing_count": counts["hearings"],
        "pending_reply_count": len(counts["awaiting_reply"]),
    }


# ── Mutations ────────────────────────────────────────────────────────────────


def _load_for_step(stage_instance_id, step_key, tenant_id, expected_version):
    if step_key not in WORKFLOW_STEPS:
        raise ValidationError(
            f"Unknown workflow step '{step_key}'",
            details={"step_key": f"must be one of {list(WORKFLOW_STEPS)}"},
        )
    instance = get_scoped(StageInstance, stage_instance_id, tenant_id=tenant_id)
    case = load_case_for_update(instance.case_id, tenant_id=tenant_id)
    db.session.refresh(instance)
    if not instance.is_active:
        raise InvalidStateError(
            "StageInstance", instance.id, instance.status,
            "Workflow steps can only change on the Active stage instance",
        )
    claim_case(case, expected_version=expected_version)
    steps = _steps(instance)
    step = steps.get(step_key)
    if step is None:
        raise InvalidStateError("StageInstance", instance.id, instance.status, f"step '{step_key}' was never seeded")
    if step.is_done:
        raise InvalidStateError("StageWorkflowStep", step.id, step.status, f"Step '{step_key}' is already done")
    statuses = {key: s.status for key, s in steps.items()}
    reasons = ordering_blockers(statuses, step_key)
    if reasons:
        raise BlockedError(f"Step '{step_key}' cannot be completed out of order", blocking_reasons=reasons)
    return instance, case, steps, step


def _open_next_step(steps: dict, after_key: str) -> None:
    for key in WORKFLOW_STEPS[WORKFLOW_STEPS.index(after_key) + 1:]:
        step = steps.get(key)
        if step is not None and step.status == STEP_PENDING:
            step.status = STEP_IN_PROGRESS
            return
        if step is not None and step.status == STEP_IN_PROGRESS:
            return


def _step_blockers(instance: StageInstance, step_key: str, checklist_verdict) -> list[str]:
    if step_key == STEP_NOTICES:
        if not _notices(instance):
            return ["Record at least one notice for this stage"]
    elif step_key == STEP_REPLY:
        waiting = [n for n in _notices(instance) if n.status in NOTICE_AWAITING_REPLY]
        return [
            f"Notice {n.notice_number or '#' + str(n.id)} is {n.status}; file a reply first"
            for n in waiting
        ]
    elif step_key == STEP_HEARINGS:
        if checklist_service.hearing_count(instance) < 1:
            return ["Record at least one hearing, or skip this step"]
    elif step_key == STEP_CLOSURE:
        if not checklist_verdict["can_close"]:
            return checklist_verdict["blocking_reasons"]
    return []


def complete_step(
    stage_instance_id: int,
    step_key: str,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
    notes: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """Complete one step. Closure also closes the stage and advances the case."""
    evidence = None
    if step_key == STEP_CLOSURE:
        instance = get_scoped(StageInstance, stage_instance_id, tenant_id=tenant_id)
        evidence = checklist_service.collect_document_evidence(instance)

    next_instance = transition = None
    with atomic():
        instance, case, steps, step = _load_for_step(stage_instance_id, step_key, tenant_id, expected_version)

        verdict = None
        if step_key == STEP_CLOSURE:
            stage_store.check_from_instance(instance)
            verdict = checklist_service.evaluate_instance(instance, persist=True, evidence=evidence)
        reasons = _step_blockers(instance, step_key, verdict)
        if reasons:
            raise BlockedError(f"Step '{step_key}' cannot be completed", blocking_reasons=reasons)

        step.status = STEP_COMPLETED
        step.completed_by = actor
        step.completed_at = _utcnow()
        if notes is not None:
            step.notes = notes
        _open_next_step(steps, step_key)
        db.session.flush()
        write_audit(
            entity_type="workflow_step", entity_id=step.id, action="workflow.complete_step",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=case.id,
            diff={"stage_instance_id": instance.id, "step_key": step_key, "notes": notes},
        )

        if step_key == STEP_CLOSURE:
            target = next_stage_key(instance.stage_key)
            if target is not None:
                next_instance, transition = stage_store.apply_move(
                    case, instance, target, TRANSITION_FORWARD,
                    actor=actor, actor_role=actor_role,
                    comments=f"Stage {instance.stage_key} workflow completed",
                )
            else:
                stage_store.close_instance(instance, INSTANCE_COMPLETED)
                write_audit(
                    entity_type="stage_instance", entity_id=instance.id, action="lifecycle.close_stage",
                    actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=case.id,
                    diff={"stage": f"{instance.stage_key}#{instance.cycle_no}", "final": True},
                )

    logger.info(
        "Step %s completed on %s#%s", step_key, instance.stage_key, instance.cycle_no,
        extra={"tenant_id": tenant_id, "case_id": instance.case_id,
               "stage_instance_id": instance.id, "actor": actor},
    )
    return {
        "step": step.to_dict(),
        "stage_instance": instance.to_dict(),
        "next_stage_instance": next_instance.to_dict() if next_instance else None,
        "transition": transition.to_dict() if transition else None,
    }


def skip_step(
    stage_instance_id: int,
    step_key: str,
    reason: str,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """Mark a step as legitimately inapplicable. Closure cannot be skipped."""
    if not (reason or "").strip():
        raise ValidationError("A reason is required to skip a step", details={"reason": "required"})
    if step_key == STEP_CLOSURE:
        raise ValidationError("The closure step cannot be skipped", details={"step_key": "closure"})

    with atomic():
        instance, case, steps, step = _load_for_step(stage_instance_id, step_key, tenant_id, expected_version)
        step.status = STEP_SKIPPED
        step.completed_by = actor
        step.completed_at = _utcnow()
        step.notes = reason.strip()
        _open_next_step(steps, step_key)
        db.session.flush()
        write_audit(
            entity_type="workflow_step", entity_id=step.id, action="workflow.skip_step",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=case.id,
            diff={"stage_instance_id": instance.id, "step_key": step_key, "reason": step.notes},
        )
    logger.info(
        "Step %s skipped on %s#%s", step_key, instance.stage_key, instance.cycle_no,
        extra={"tenant_id": tenant_id, "case_id": instance.case_id,
               "stage_instance_id": instance.id, "actor": actor},
    )
    return {"step": step.to_dict(), "stage_instance": instance.to_dict()}
