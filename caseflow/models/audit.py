"""
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
"""

import json
from datetime import UTC, datetime

from caseflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "case", "stage_instance", "stage_transition",
    "checklist_item", "workflow_step", "stage_notice", "stage_reply",
}

AUDIT_ACTIONS = {
    # Stage lifecycle
    "lifecycle.start",
    "lifecycle.forward",
    "lifecycle.send_back",
    "lifecycle.remand",
    "lifecycle.close_stage",
    # Approval
    "approval.request",
    "approval.approve",
    "approval.reject",
    "approval.comment",
    "transition.amend",
    # Checklist
    "checklist.attest",
    "checklist.override",
    # Micro-workflow
    "workflow.complete_step",
    "workflow.skip_step",
    # Notice / reply sub-ledger
    "notice.create",
    "notice.update",
    "notice.delete",
    "reply.create",
    "reply.update",
    "reply.delete",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action. ``diff_json`` carries the old→new snapshot for
    field-level changes, or the transition payload for stage moves.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_case", "case_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    case_id = db.Column(
        db.Integer,
        nullable=True,
        comment="No FK: the trail outlives the case it describes",
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="case | stage_instance | stage_transition | …",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="lifecycle.remand | approval.reject | checklist.override | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_role = db.Column(db.String(60), nullable=True)

    # Change payload
    diff_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "case_id": self.case_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    actor_role: str | None = None,
    tenant_id: int | None = None,
    case_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control: the row commits or rolls back together with the
    change it records.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        tenant_id=tenant_id,
        case_id=case_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        actor_role=actor_role,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
