"""
Tenant (law firm / legal department) that owns cases.

Users, roles and login are managed elsewhere; requests arrive carrying an
actor id and role. Only the tenant row lives here, because every lifecycle
table is partitioned by it and the request middleware checks ``is_active``.
"""

from datetime import datetime, timezone

from caseflow.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Tenant {self.slug} active={self.is_active}>"
