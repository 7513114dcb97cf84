"""Abstract base for every tenant-owned lifecycle table."""

from caseflow.models import db


class TenantModel(db.Model):
    __abstract__ = True

    # Deleting a tenant takes its cases and their whole history with it
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
