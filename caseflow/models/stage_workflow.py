"""
Per-stage micro-workflow models.

Models:
    - StageNotice: a notice received within a stage (original notice,
      reminders, show-cause notices). Owned by the case; stage_instance_id
      is a reference only and is nulled, never cascaded, on instance delete.
    - StageReply: a reply filed against exactly one notice.
    - StageWorkflowStep: explicit completion record for one of the four
      fixed steps (notices → reply → hearings → closure) of an instance.
"""

from datetime import datetime, timezone
from decimal import Decimal

from caseflow.models import db
from caseflow.models.base import TenantModel


def _utcnow():
    return datetime.now(timezone.utc)


# ── Vocabularies ─────────────────────────────────────────────────────────────

NOTICE_RECEIVED = "Received"
NOTICE_REPLY_PENDING = "Reply Pending"
NOTICE_REPLIED = "Replied"
NOTICE_CLOSED = "Closed"
NOTICE_STATUSES = (NOTICE_RECEIVED, NOTICE_REPLY_PENDING, NOTICE_REPLIED, NOTICE_CLOSED)
NOTICE_AWAITING_REPLY = frozenset({NOTICE_RECEIVED, NOTICE_REPLY_PENDING})

NOTICE_WORKFLOW_STEPS = ("notice", "reply", "hearing", "closed")

REPLY_DRAFT = "Draft"
REPLY_FILED = "Filed"
REPLY_ACKNOWLEDGED = "Acknowledged"
REPLY_FILING_STATUSES = (REPLY_DRAFT, REPLY_FILED, REPLY_ACKNOWLEDGED)
REPLY_SUBMITTED = frozenset({REPLY_FILED, REPLY_ACKNOWLEDGED})

REPLY_FILING_MODES = ("Portal", "Physical", "Email")

STEP_NOTICES = "notices"
STEP_REPLY = "reply"
STEP_HEARINGS = "hearings"
STEP_CLOSURE = "closure"
WORKFLOW_STEPS = (STEP_NOTICES, STEP_REPLY, STEP_HEARINGS, STEP_CLOSURE)

STEP_LABELS = {
    STEP_NOTICES: "Notice(s)",
    STEP_REPLY: "Reply",
    STEP_HEARINGS: "Hearing(s)",
    STEP_CLOSURE: "Stage Closure",
}

STEP_PENDING = "Pending"
STEP_IN_PROGRESS = "In Progress"
STEP_COMPLETED = "Completed"
STEP_SKIPPED = "Skipped"
STEP_STATUSES = (STEP_PENDING, STEP_IN_PROGRESS, STEP_COMPLETED, STEP_SKIPPED)
STEP_DONE = frozenset({STEP_COMPLETED, STEP_SKIPPED})


def _money(value):
    return Decimal(value) if value is not None else Decimal("0")


# ═════════════════════════════════════════════════════════════════════════════
# StageNotice
# ═════════════════════════════════════════════════════════════════════════════


class StageNotice(TenantModel):
    """
    Notice recorded within a case's stage.

    The total demand is never stored: it is derived from the tax / interest /
    penalty components, each gated by its own *_applicable flag, so it cannot
    drift from them.
    """

    __tablename__ = "stage_notices"
    __table_args__ = (
        db.Index("ix_stage_notices_case_created", "case_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(
        db.Integer, db.ForeignKey("cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_instance_id = db.Column(
        db.Integer, db.ForeignKey("stage_instances.id", ondelete="SET NULL"),
        nullable=True, index=True,
        comment="Nullable: a notice may predate workflow attachment",
    )

    notice_type = db.Column(db.String(60), nullable=True)
    notice_number = db.Column(db.String(100), nullable=True)
    notice_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    offline_reference_no = db.Column(db.String(100), nullable=True)
    issuing_authority = db.Column(db.String(255), nullable=True)
    section_invoked = db.Column(db.String(120), nullable=True)
    financial_year = db.Column(db.String(20), nullable=True)
    tax_period_start = db.Column(db.Date, nullable=True)
    tax_period_end = db.Column(db.Date, nullable=True)

    # Financial breakdown
    tax_amount = db.Column(db.Numeric(15, 2), nullable=True)
    interest_amount = db.Column(db.Numeric(15, 2), nullable=True)
    penalty_amount = db.Column(db.Numeric(15, 2), nullable=True)
    tax_applicable = db.Column(db.Boolean, nullable=False, default=True)
    interest_applicable = db.Column(db.Boolean, nullable=False, default=True)
    penalty_applicable = db.Column(db.Boolean, nullable=False, default=True)

    status = db.Column(
        db.String(20), nullable=False, default=NOTICE_RECEIVED,
        comment="Received | Reply Pending | Replied | Closed",
    )
    workflow_step = db.Column(db.String(20), nullable=False, default="notice")
    documents = db.Column(db.JSON, nullable=False, default=list)
    is_original = db.Column(db.Boolean, nullable=False, default=False)
    extra_metadata = db.Column("metadata", db.JSON, nullable=False, default=dict)

    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    replies = db.relationship(
        "StageReply", backref="notice", lazy="select",
        passive_deletes=True, order_by="StageReply.id",
    )

    @property
    def total_demand(self) -> Decimal:
        """tax + interest + penalty, each counted only when applicable."""
        total = Decimal("0")
        if self.tax_applicable:
            total += _money(self.tax_amount)
        if self.interest_applicable:
            total += _money(self.interest_amount)
        if self.penalty_applicable:
            total += _money(self.penalty_amount)
        return total

    def to_dict(self):
        def _amount(v):
            return float(v) if v is not None else None

        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "case_id": self.case_id,
            "stage_instance_id": self.stage_instance_id,
            "notice_type": self.notice_type,
            "notice_number": self.notice_number,
            "notice_date": self.notice_date.isoformat() if self.notice_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "offline_reference_no": self.offline_reference_no,
            "issuing_authority": self.issuing_authority,
            "section_invoked": self.section_invoked,
            "financial_year": self.financial_year,
            "tax_period_start": self.tax_period_start.isoformat() if self.tax_period_start else None,
            "tax_period_end": self.tax_period_end.isoformat() if self.tax_period_end else None,
            "tax_amount": _amount(self.tax_amount),
            "interest_amount": _amount(self.interest_amount),
            "penalty_amount": _amount(self.penalty_amount),
            "tax_applicable": self.tax_applicable,
            "interest_applicable": self.interest_applicable,
            "penalty_applicable": self.penalty_applicable,
            "total_demand": float(self.total_demand),
            "status": self.status,
            "workflow_step": self.workflow_step,
            "documents": list(self.documents or []),
            "is_original": self.is_original,
            "metadata": self.extra_metadata or {},
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<StageNotice {self.id}: case={self.case_id} {self.notice_number} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# StageReply
# ═════════════════════════════════════════════════════════════════════════════


class StageReply(TenantModel):
    """Reply filed against one StageNotice of the same case."""

    __tablename__ = "stage_replies"

    id = db.Column(db.Integer, primary_key=True)
    notice_id = db.Column(
        db.Integer, db.ForeignKey("stage_notices.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    case_id = db.Column(
        db.Integer, db.ForeignKey("cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_instance_id = db.Column(
        db.Integer, db.ForeignKey("stage_instances.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    reply_date = db.Column(db.Date, nullable=True)
    reply_reference = db.Column(db.String(100), nullable=True)
    filing_status = db.Column(
        db.String(20), nullable=False, default=REPLY_DRAFT,
        comment="Draft | Filed | Acknowledged",
    )
    filing_mode = db.Column(db.String(20), nullable=True, comment="Portal | Physical | Email")
    documents = db.Column(db.JSON, nullable=False, default=list)
    notes = db.Column(db.Text, nullable=True)
    filed_by = db.Column(db.String(150), nullable=True)
    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "notice_id": self.notice_id,
            "case_id": self.case_id,
            "stage_instance_id": self.stage_instance_id,
            "reply_date": self.reply_date.isoformat() if self.reply_date else None,
            "reply_reference": self.reply_reference,
            "filing_status": self.filing_status,
            "filing_mode": self.filing_mode,
            "documents": list(self.documents or []),
            "notes": self.notes,
            "filed_by": self.filed_by,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# StageWorkflowStep
# ═════════════════════════════════════════════════════════════════════════════


class StageWorkflowStep(TenantModel):
    """Completion record for one micro-workflow step of a stage instance."""

    __tablename__ = "stage_workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("stage_instance_id", "step_key", name="uq_workflow_step_instance_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    stage_instance_id = db.Column(
        db.Integer, db.ForeignKey("stage_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_key = db.Column(db.String(20), nullable=False, comment="notices | reply | hearings | closure")
    status = db.Column(db.String(20), nullable=False, default=STEP_PENDING)
    completed_by = db.Column(db.String(150), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def is_done(self) -> bool:
        return self.status in STEP_DONE

    def to_dict(self):
        return {
            "id": self.id,
            "stage_instance_id": self.stage_instance_id,
            "step_key": self.step_key,
            "status": self.status,
            "completed_by": self.completed_by,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notes": self.notes,
        }
