"""
ORM-level immutability enforcement for the legal record.

SQLAlchemy fires ``before_update`` / ``before_delete`` mapper events before
the SQL reaches the database. The listeners registered here check:

    Entity                  | When immutable
    ------------------------|-----------------------------------------------
    StageTransition         | reason / order metadata / attachments / comments
                            | once is_confirmed is True; never deletable
    StageTransitionApproval | always
    AuditLog                | always

Violations raise ImmutabilityViolationError and abort the flush.

Usage:
    from caseflow.models.immutability import register_immutability_listeners
    register_immutability_listeners()  # once, from create_app()
"""

import logging

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from caseflow.core.exceptions import ImmutabilityViolationError

logger = logging.getLogger(__name__)

# Fields frozen on a confirmed StageTransition. Corrections are a new transition.
TRANSITION_FROZEN_FIELDS = (
    "case_id",
    "from_stage_instance_id",
    "to_stage_instance_id",
    "from_stage_key",
    "to_stage_key",
    "transition_type",
    "reason_enum",
    "reason_text",
    "order_no",
    "order_date",
    "order_document_id",
    "comments",
    "attachments",
    "actor",
    "is_confirmed",
)


def _blocked(entity_type, entity_id, operation, reason, field=None):
    logger.error(
        "Immutability violation blocked: %s %s id=%s",
        operation, entity_type, entity_id,
        extra={"entity_type": entity_type, "operation": operation, "field": field},
    )
    raise ImmutabilityViolationError(entity_type, entity_id, reason)


def _was_confirmed(target) -> bool:
    hist = get_history(target, "is_confirmed")
    if hist.deleted:
        return bool(hist.deleted[0])
    if hist.added:
        return False
    return bool(target.is_confirmed)


def _check_transition_update(mapper, connection, target):
    if not _was_confirmed(target):
        return
    for field in TRANSITION_FROZEN_FIELDS:
        if get_history(target, field).has_changes():
            _blocked(
                "StageTransition", target.id, "UPDATE",
                f"Cannot modify '{field}' on a confirmed transition; record a new transition instead",
                field=field,
            )


def _check_transition_delete(mapper, connection, target):
    _blocked("StageTransition", target.id, "DELETE", "Stage transitions are append-only")


def _check_approval_update(mapper, connection, target):
    _blocked("StageTransitionApproval", target.id, "UPDATE", "Approval actions are immutable")


def _check_approval_delete(mapper, connection, target):
    _blocked("StageTransitionApproval", target.id, "DELETE", "Approval actions are immutable")


def _check_audit_update(mapper, connection, target):
    _blocked("AuditLog", target.id, "UPDATE", "Audit rows are immutable")


def _check_audit_delete(mapper, connection, target):
    _blocked("AuditLog", target.id, "DELETE", "Audit rows are immutable")


def register_immutability_listeners():
    """Register all immutability listeners. Safe to call more than once."""
    from caseflow.models.audit import AuditLog
    from caseflow.models.lifecycle import StageTransition, StageTransitionApproval

    listeners = [
        (StageTransition, "before_update", _check_transition_update),
        (StageTransition, "before_delete", _check_transition_delete),
        (StageTransitionApproval, "before_update", _check_approval_update),
        (StageTransitionApproval, "before_delete", _check_approval_delete),
        (AuditLog, "before_update", _check_audit_update),
        (AuditLog, "before_delete", _check_audit_delete),
    ]
    for target, name, fn in listeners:
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)
    logger.debug("Immutability listeners registered (%d)", len(listeners))
