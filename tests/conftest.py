"""
Shared pytest fixtures for the case lifecycle test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - headers / approver_headers: tenant + actor request headers
    - make_case: LegalCase factory
    - started_case: a case whose lifecycle is open at Assessment#1
"""

from datetime import date

import pytest

from caseflow import create_app
from caseflow.models import db as _db
from caseflow.models.auth import Tenant
from caseflow.models.case import Hearing, LegalCase
from caseflow.models.lifecycle import StageInstance, next_stage_key
from caseflow.services import lifecycle_service, stage_store

ACTOR = "asha.partner"
APPROVER = "vikram.senior"


def _ensure_default_tenant():
    """Create the default tenant for tests if it doesn't exist. Returns its id."""
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    return t.id


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _ensure_default_tenant()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    return Tenant.query.filter_by(slug="test-default").first()


@pytest.fixture()
def headers(default_tenant):
    return {
        "X-Tenant-ID": str(default_tenant.id),
        "X-Actor-ID": ACTOR,
        "X-Actor-Role": "Partner",
    }


@pytest.fixture()
def approver_headers(default_tenant):
    return {
        "X-Tenant-ID": str(default_tenant.id),
        "X-Actor-ID": APPROVER,
        "X-Actor-Role": "Senior Partner",
    }


# ── Domain factories ─────────────────────────────────────────────────────


@pytest.fixture()
def make_case(default_tenant):
    """Factory: create and commit a LegalCase with complete intake fields."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "tenant_id": default_tenant.id,
            "case_number": f"GST/2026/{counter['n']:04d}",
            "title": "Show cause notice on input tax credit",
            "client_name": "Acme Traders",
            "assigned_to": ACTOR,
            "authority": "Superintendent, CGST Range 4",
            "notice_no": f"SCN-{counter['n']:04d}",
            "notice_type": "Show Cause Notice",
            "notice_date": date(2026, 3, 1),
            "reply_due_date": date(2026, 4, 1),
            "tax_demand": 100000,
        }
        fields.update(overrides)
        case = LegalCase(**fields)
        _db.session.add(case)
        _db.session.commit()
        return case

    return _make


@pytest.fixture()
def started_case(make_case, default_tenant):
    """(case, Assessment#1 instance) with the original notice filed against it."""
    case = make_case()
    result = lifecycle_service.start_case_lifecycle(case.id, tenant_id=default_tenant.id, actor=ACTOR)
    return case, _db.session.get(StageInstance, result["stage_instance"]["id"])


def _override_all(instance):
    return [
        {"item_key": item.item_key, "note": "Verified offline"}
        for item in instance.checklist_items
        if item.required
    ]


@pytest.fixture()
def override_all():
    """Factory: checklist_overrides entries covering every required item of an instance."""
    return _override_all


@pytest.fixture()
def add_hearing():
    """Factory: record a hearing on a case, optionally tied to a stage instance."""

    def _add(case, instance=None, status="Held"):
        hearing = Hearing(
            tenant_id=case.tenant_id,
            case_id=case.id,
            stage_instance_id=instance.id if instance is not None else None,
            hearing_date=date(2026, 5, 10),
            status=status,
        )
        _db.session.add(hearing)
        _db.session.commit()
        return hearing

    return _add


@pytest.fixture()
def walk_forward():
    """Factory: advance a case stage by stage until the target stage is Active."""

    def _walk(case, instance, to_stage_key):
        while instance.stage_key != to_stage_key:
            instance, _ = stage_store.advance(
                case.id, instance.id, next_stage_key(instance.stage_key),
                tenant_id=case.tenant_id, actor=ACTOR,
                checklist_overrides=_override_all(instance),
            )
        return instance

    return _walk
