"""
Stage lifecycle domain models.

Models:
    - StageInstance: one visit of a case to a stage, numbered by cycle.
    - StageTransition: append-only edge between two stage instances.
    - StageTransitionApproval: one action in a transition's approval thread.
    - ChecklistItem: a gating condition attached to one stage instance.

The stage graph is cyclic (send-back and remand re-enter earlier stages),
so history is kept as an append-only sequence keyed by
(case_id, stage_key, cycle_no) rather than a mutable "current stage"
pointer. ``LegalCase.current_stage_key`` is a denormalised convenience only.
"""

from datetime import datetime, timezone

from caseflow.models import db
from caseflow.models.base import TenantModel


def _utcnow():
    return datetime.now(timezone.utc)


# ── Vocabularies ─────────────────────────────────────────────────────────────

STAGE_ORDER = [
    "Assessment",
    "Notice",
    "Reply",
    "Hearing",
    "Order",
    "First Appeal",
    "Tribunal",
    "High Court",
    "Supreme Court",
]

TRANSITION_FORWARD = "Forward"
TRANSITION_SEND_BACK = "Send Back"
TRANSITION_REMAND = "Remand"
TRANSITION_TYPES = (TRANSITION_FORWARD, TRANSITION_SEND_BACK, TRANSITION_REMAND)

REASON_ENUMS = (
    "Missing Documents",
    "Incorrect Filing",
    "Legal Deficiency",
    "Technical Error",
    "Court Direction",
    "Other",
)

INSTANCE_ACTIVE = "Active"
INSTANCE_COMPLETED = "Completed"
INSTANCE_REMANDED = "Remanded"
INSTANCE_SUPERSEDED = "Superseded"
INSTANCE_STATUSES = (INSTANCE_ACTIVE, INSTANCE_COMPLETED, INSTANCE_REMANDED, INSTANCE_SUPERSEDED)

# Status the from-instance is left in, per transition type
CLOSING_STATUS = {
    TRANSITION_FORWARD: INSTANCE_COMPLETED,
    TRANSITION_SEND_BACK: INSTANCE_REMANDED,
    TRANSITION_REMAND: INSTANCE_REMANDED,
}

APPROVAL_NOT_REQUIRED = "not_required"
APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"

APPROVAL_ACTIONS = ("request", "approve", "reject", "comment")
TERMINAL_APPROVAL_ACTIONS = ("approve", "reject")

RULE_AUTO_DMS = "auto_dms"
RULE_AUTO_HEARING = "auto_hearing"
RULE_AUTO_FIELD = "auto_field"
RULE_MANUAL = "manual"
RULE_TYPES = (RULE_AUTO_DMS, RULE_AUTO_HEARING, RULE_AUTO_FIELD, RULE_MANUAL)

CHECK_AUTO = "Auto✓"
CHECK_ATTESTED = "Attested"
CHECK_OVERRIDE = "Override"
CHECK_PENDING = "Pending"
CHECK_STATUSES = (CHECK_AUTO, CHECK_ATTESTED, CHECK_OVERRIDE, CHECK_PENDING)
SATISFIED_CHECK_STATUSES = frozenset({CHECK_AUTO, CHECK_ATTESTED, CHECK_OVERRIDE})


def stage_index(stage_key: str) -> int:
    """Position of *stage_key* in STAGE_ORDER; -1 if unknown."""
    try:
        return STAGE_ORDER.index(stage_key)
    except ValueError:
        return -1


def next_stage_key(stage_key: str) -> str | None:
    """The stage that follows *stage_key*, or None at the end of the line."""
    idx = stage_index(stage_key)
    if idx < 0 or idx >= len(STAGE_ORDER) - 1:
        return None
    return STAGE_ORDER[idx + 1]


# ═════════════════════════════════════════════════════════════════════════════
# StageInstance
# ═════════════════════════════════════════════════════════════════════════════


class StageInstance(TenantModel):
    """
    One visit of a case to a stage.

    Invariants (backed by the database):
    - (case_id, stage_key, cycle_no) is unique; cycle_no is gapless per
      (case_id, stage_key) because it is always max+1 under the case claim.
    - At most one row per case has status='Active' (partial unique index).
    """

    __tablename__ = "stage_instances"
    __table_args__ = (
        db.UniqueConstraint("case_id", "stage_key", "cycle_no", name="uq_stage_instances_case_stage_cycle"),
        db.Index(
            "uq_stage_instances_one_active",
            "case_id",
            unique=True,
            sqlite_where=db.text("status = 'Active'"),
            postgresql_where=db.text("status = 'Active'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(
        db.Integer, db.ForeignKey("cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_key = db.Column(db.String(40), nullable=False)
    cycle_no = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(
        db.String(20), nullable=False, default=INSTANCE_ACTIVE,
        comment="Active | Completed | Remanded | Superseded",
    )
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(150), nullable=False, default="system")

    checklist_items = db.relationship(
        "ChecklistItem", backref="stage_instance", lazy="select",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="ChecklistItem.id",
    )
    workflow_steps = db.relationship(
        "StageWorkflowStep", backref="stage_instance", lazy="select",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="StageWorkflowStep.id",
    )

    @property
    def is_active(self) -> bool:
        return self.status == INSTANCE_ACTIVE

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "case_id": self.case_id,
            "stage_key": self.stage_key,
            "cycle_no": self.cycle_no,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "created_by": self.created_by,
        }

    def __repr__(self):
        return f"<StageInstance {self.id}: case={self.case_id} {self.stage_key}#{self.cycle_no} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# StageTransition
# ═════════════════════════════════════════════════════════════════════════════


class StageTransition(TenantModel):
    """
    Append-only edge in a case's stage graph.

    Business rules:
    - Rows are never deleted.
    - to_stage_instance_id is 1:1 with the instance created by this move.
    - Send Back / Remand carry a reason_enum; Remand also carries order metadata.
    - Once is_confirmed=True the reason, order metadata, comments and
      attachments are frozen (see caseflow.models.immutability); corrections
      are a new transition.
    """

    __tablename__ = "stage_transitions"
    __table_args__ = (
        db.Index("ix_stage_transitions_case_created", "case_id", "created_at"),
        db.Index("ix_stage_transitions_tenant_approval", "tenant_id", "approval_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(
        db.Integer, db.ForeignKey("cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_stage_instance_id = db.Column(
        db.Integer, db.ForeignKey("stage_instances.id", ondelete="CASCADE"),
        nullable=True, index=True,
        comment="NULL for the case's first stage",
    )
    to_stage_instance_id = db.Column(
        db.Integer, db.ForeignKey("stage_instances.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    from_stage_key = db.Column(db.String(40), nullable=True)
    to_stage_key = db.Column(db.String(40), nullable=False)
    transition_type = db.Column(
        db.String(20), nullable=False,
        comment="Forward | Send Back | Remand",
    )

    # Reason & order metadata
    reason_enum = db.Column(db.String(40), nullable=True)
    reason_text = db.Column(db.Text, nullable=True)
    order_no = db.Column(db.String(100), nullable=True)
    order_date = db.Column(db.Date, nullable=True)
    order_document_id = db.Column(db.String(100), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    attachments = db.Column(db.JSON, nullable=False, default=list)
    validation_warnings = db.Column(
        db.JSON, nullable=False, default=list,
        comment="Checklist items overridden or unmet when the move was made",
    )

    # Approval
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    approval_status = db.Column(
        db.String(20), nullable=False, default=APPROVAL_NOT_REQUIRED,
        comment="not_required | pending | approved | rejected",
    )
    is_confirmed = db.Column(db.Boolean, nullable=False, default=True)
    approved_by = db.Column(db.String(150), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Actor
    actor = db.Column(db.String(150), nullable=False)
    actor_role = db.Column(db.String(60), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    from_instance = db.relationship("StageInstance", foreign_keys=[from_stage_instance_id])
    to_instance = db.relationship("StageInstance", foreign_keys=[to_stage_instance_id])
    approvals = db.relationship(
        "StageTransitionApproval", backref="transition", lazy="select",
        order_by="StageTransitionApproval.id",
    )

    def to_dict(self, include_approvals: bool = False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "case_id": self.case_id,
            "from_stage_instance_id": self.from_stage_instance_id,
            "to_stage_instance_id": self.to_stage_instance_id,
            "from_stage_key": self.from_stage_key,
            "to_stage_key": self.to_stage_key,
            "type": self.transition_type,
            "reason_enum": self.reason_enum,
            "reason_text": self.reason_text,
            "order_no": self.order_no,
            "order_date": self.order_date.isoformat() if self.order_date else None,
            "order_document_id": self.order_document_id,
            "comments": self.comments,
            "attachments": list(self.attachments or []),
            "validation_warnings": list(self.validation_warnings or []),
            "requires_approval": self.requires_approval,
            "approval_status": self.approval_status,
            "is_confirmed": self.is_confirmed,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_approvals:
            d["approvals"] = [a.to_dict() for a in self.approvals]
        return d

    def __repr__(self):
        return (
            f"<StageTransition {self.id}: {self.from_stage_key} → {self.to_stage_key} "
            f"{self.transition_type} {self.approval_status}>"
        )


class StageTransitionApproval(TenantModel):
    """
    Immutable approval-thread entry. One row per request / approve /
    reject / comment action; never updated or deleted.
    """

    __tablename__ = "stage_transition_approvals"

    id = db.Column(db.Integer, primary_key=True)
    transition_id = db.Column(
        db.Integer, db.ForeignKey("stage_transitions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    action = db.Column(db.String(20), nullable=False, comment="request | approve | reject | comment")
    actor = db.Column(db.String(150), nullable=False)
    actor_role = db.Column(db.String(60), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "transition_id": self.transition_id,
            "action": self.action,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "comments": self.comments,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# ChecklistItem
# ═════════════════════════════════════════════════════════════════════════════


class ChecklistItem(TenantModel):
    """Gating condition on a stage instance, instantiated from a stage template."""

    __tablename__ = "stage_checklist_items"
    __table_args__ = (
        db.UniqueConstraint("stage_instance_id", "item_key", name="uq_checklist_instance_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    stage_instance_id = db.Column(
        db.Integer, db.ForeignKey("stage_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    item_key = db.Column(db.String(60), nullable=False)
    label = db.Column(db.String(255), nullable=False)
    required = db.Column(db.Boolean, nullable=False, default=True)
    rule_type = db.Column(db.String(20), nullable=False, comment="auto_dms | auto_hearing | auto_field | manual")
    rule_config = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default=CHECK_PENDING)
    detail = db.Column(db.String(500), nullable=True, comment="Last automatic verdict, human-readable")
    attested_by = db.Column(db.String(150), nullable=True)
    attested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    note = db.Column(db.Text, nullable=True)
    evidence_ref = db.Column(db.String(255), nullable=True)
    evaluated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_instance_id": self.stage_instance_id,
            "item_key": self.item_key,
            "label": self.label,
            "required": self.required,
            "rule_type": self.rule_type,
            "status": self.status,
            "detail": self.detail,
            "attested_by": self.attested_by,
            "attested_at": self.attested_at.isoformat() if self.attested_at else None,
            "note": self.note,
            "evidence_ref": self.evidence_ref,
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }
