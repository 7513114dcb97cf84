"""
Case domain models.

Models:
    - LegalCase: the case header the lifecycle hangs off. Only the fields the
      engine reads are modelled here; the wider case record (clients, tasks,
      billing) belongs to the surrounding application.
    - Hearing: hearing records linked to a case and optionally to the stage
      instance during which they were held.

``LegalCase.stage_version`` is the optimistic-concurrency counter every
lifecycle mutation claims with a compare-and-set before touching the
stage tables.
"""

from datetime import datetime, timezone

from caseflow.models import db
from caseflow.models.base import TenantModel


def _utcnow():
    return datetime.now(timezone.utc)


class LegalCase(TenantModel):
    """A legal matter tracked through statutory stages."""

    __tablename__ = "cases"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "case_number", name="uq_cases_tenant_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    case_number = db.Column(db.String(60), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    client_name = db.Column(db.String(255), nullable=True)
    assigned_to = db.Column(db.String(150), nullable=True)
    authority = db.Column(db.String(255), nullable=True)

    # Notice header captured at intake; seeds the original StageNotice
    notice_no = db.Column(db.String(100), nullable=True)
    notice_type = db.Column(db.String(60), nullable=True)
    notice_date = db.Column(db.Date, nullable=True)
    section_invoked = db.Column(db.String(120), nullable=True)
    tax_demand = db.Column(db.Numeric(15, 2), nullable=True)
    reply_due_date = db.Column(db.Date, nullable=True)

    current_stage_key = db.Column(
        db.String(40), nullable=True,
        comment="Denormalised stage_key of the Active StageInstance; NULL before start",
    )
    stage_version = db.Column(
        db.Integer, nullable=False, default=0,
        comment="Bumped by compare-and-set on every lifecycle mutation",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    stage_instances = db.relationship(
        "StageInstance", backref="legal_case", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    hearings = db.relationship(
        "Hearing", backref="legal_case", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "case_number": self.case_number,
            "title": self.title,
            "client_name": self.client_name,
            "assigned_to": self.assigned_to,
            "authority": self.authority,
            "notice_no": self.notice_no,
            "notice_type": self.notice_type,
            "notice_date": self.notice_date.isoformat() if self.notice_date else None,
            "section_invoked": self.section_invoked,
            "tax_demand": float(self.tax_demand) if self.tax_demand is not None else None,
            "reply_due_date": self.reply_due_date.isoformat() if self.reply_due_date else None,
            "current_stage_key": self.current_stage_key,
            "stage_version": self.stage_version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<LegalCase {self.id}: {self.case_number}>"


class Hearing(TenantModel):
    """A hearing held (or scheduled) for a case."""

    __tablename__ = "hearings"

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(
        db.Integer, db.ForeignKey("cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_instance_id = db.Column(
        db.Integer, db.ForeignKey("stage_instances.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    hearing_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="Scheduled")
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "case_id": self.case_id,
            "stage_instance_id": self.stage_instance_id,
            "hearing_date": self.hearing_date.isoformat() if self.hearing_date else None,
            "status": self.status,
            "notes": self.notes,
        }
