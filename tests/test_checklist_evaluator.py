"""
Checklist evaluator tests.

Covers:
    - can_close over required / optional items
    - auto_field, auto_hearing and auto_dms rules (local and remote document mode)
    - document service failure degrades to Pending with a readable detail
    - attest / override: allowed states, note requirement, no downgrade on re-evaluation
    - persist=False never writes
"""

import pytest
import requests

from caseflow.core.exceptions import InvalidStateError, ValidationError
from caseflow.integrations.document_gateway import DocumentGateway, document_gateway
from caseflow.models import db
from caseflow.models.case import LegalCase
from caseflow.models.lifecycle import ChecklistItem
from caseflow.services import checklist_service, stage_notice_service

ACTOR = "asha.partner"


def _item(instance, key):
    return next(i for i in instance.checklist_items if i.item_key == key)


def _verdict_item(verdict, key):
    return next(i for i in verdict["items"] if i["item_key"] == key)


class _Resp:
    def __init__(self, status_code):
        self.status_code = status_code

    @property
    def ok(self):
        return 200 <= self.status_code < 400


class _FakeSession:
    """Stands in for requests.Session: maps document ref → status or exception."""

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    def head(self, url, headers=None, timeout=None):
        self.calls.append((url, headers))
        outcome = self.outcomes.get(url.rsplit("/", 1)[-1], 404)
        if isinstance(outcome, Exception):
            raise outcome
        return _Resp(outcome)


@pytest.fixture()
def notice_stage(started_case, walk_forward):
    case, a1 = started_case
    return case, walk_forward(case, a1, "Notice")


@pytest.fixture()
def remote_documents(app, monkeypatch):
    """Point the gateway at a fake document service."""

    def _install(outcomes):
        fake = _FakeSession(outcomes)
        monkeypatch.setitem(app.config, "DOCUMENT_SERVICE_URL", "http://docs.internal/api")
        monkeypatch.setattr(document_gateway, "_session", fake)
        return fake

    return _install


# ═════════════════════════════════════════════════════════════════════════════
# can_close
# ═════════════════════════════════════════════════════════════════════════════


class TestCanClose:
    @pytest.mark.parametrize("status", ["Auto✓", "Attested", "Override"])
    def test_satisfied_statuses(self, status):
        assert checklist_service.can_close([{"required": True, "status": status}])

    def test_pending_required_blocks(self):
        assert not checklist_service.can_close([
            {"required": True, "status": "Auto✓"},
            {"required": True, "status": "Pending"},
        ])

    def test_pending_optional_does_not_block(self):
        assert checklist_service.can_close([{"required": False, "status": "Pending"}])

    def test_empty_checklist_can_close(self):
        assert checklist_service.can_close([])


# ═════════════════════════════════════════════════════════════════════════════
# Rule evaluation
# ═════════════════════════════════════════════════════════════════════════════


class TestAutoRules:
    def test_auto_field_satisfied_by_case_fields(self, started_case, default_tenant):
        _, a1 = started_case
        verdict = checklist_service.evaluate(a1.id, tenant_id=default_tenant.id)

        assert _verdict_item(verdict, "case_details")["status"] == "Auto✓"
        assert _verdict_item(verdict, "case_assigned")["status"] == "Auto✓"
        assert verdict["can_close"] is False
        assert any("client_verified" in r for r in verdict["blocking_reasons"])

    def test_auto_field_names_missing_fields(self, make_case, default_tenant):
        from caseflow.services import stage_store

        case = make_case(assigned_to="  ")
        instance, _ = stage_store.start_lifecycle(case.id, tenant_id=default_tenant.id, actor=ACTOR)
        verdict = checklist_service.evaluate(instance.id, tenant_id=default_tenant.id)
        row = _verdict_item(verdict, "case_assigned")
        assert row["status"] == "Pending"
        assert row["detail"] == "missing case field(s): assigned_to"

    def test_auto_check_drops_back_when_condition_lapses(self, started_case, default_tenant):
        case, a1 = started_case
        checklist_service.evaluate(a1.id, tenant_id=default_tenant.id)
        assert _item(a1, "case_assigned").status == "Auto✓"

        db.session.get(LegalCase, case.id).assigned_to = None
        db.session.commit()
        checklist_service.evaluate(a1.id, tenant_id=default_tenant.id)
        assert _item(a1, "case_assigned").status == "Pending"

    def test_auto_hearing_counts_stage_hearings(self, started_case, walk_forward, add_hearing, default_tenant):
        case, a1 = started_case
        h1 = walk_forward(case, a1, "Hearing")
        before = checklist_service.evaluate(h1.id, tenant_id=default_tenant.id, persist=False)
        assert _verdict_item(before, "hearing_held")["status"] == "Pending"

        add_hearing(case, h1)
        after = checklist_service.evaluate(h1.id, tenant_id=default_tenant.id, persist=False)
        assert _verdict_item(after, "hearing_held")["status"] == "Auto✓"
        assert _verdict_item(after, "hearing_held")["detail"] == "1 hearing(s) recorded"

    def test_cancelled_hearings_do_not_count(self, started_case, walk_forward, add_hearing, default_tenant):
        case, a1 = started_case
        h1 = walk_forward(case, a1, "Hearing")
        add_hearing(case, h1, status="Cancelled")
        verdict = checklist_service.evaluate(h1.id, tenant_id=default_tenant.id, persist=False)
        assert _verdict_item(verdict, "hearing_held")["status"] == "Pending"

    def test_stage_less_hearings_are_the_fallback(self, started_case, walk_forward, add_hearing, default_tenant):
        case, a1 = started_case
        h1 = walk_forward(case, a1, "Hearing")
        add_hearing(case, None)
        verdict = checklist_service.evaluate(h1.id, tenant_id=default_tenant.id, persist=False)
        assert _verdict_item(verdict, "hearing_held")["status"] == "Auto✓"

    def test_auto_dms_local_mode(self, notice_stage, default_tenant):
        case, n1 = notice_stage
        stage_notice_service.create_notice(
            case.id, {"stage_instance_id": n1.id, "notice_number": "R-1", "documents": ["doc-1"]},
            tenant_id=default_tenant.id, actor=ACTOR,
        )
        verdict = checklist_service.evaluate(n1.id, tenant_id=default_tenant.id)
        assert _verdict_item(verdict, "notice_uploaded")["status"] == "Auto✓"
        assert _verdict_item(verdict, "notice_particulars")["status"] == "Auto✓"

    def test_auto_dms_without_documents(self, notice_stage, default_tenant):
        _, n1 = notice_stage
        verdict = checklist_service.evaluate(n1.id, tenant_id=default_tenant.id, persist=False)
        row = _verdict_item(verdict, "notice_uploaded")
        assert row["status"] == "Pending"
        assert row["detail"] == "0 of 1 required document(s) found"

    def test_auto_dms_remote_missing_document(self, notice_stage, default_tenant, remote_documents):
        case, n1 = notice_stage
        fake = remote_documents({"doc-1": 404})
        stage_notice_service.create_notice(
            case.id, {"stage_instance_id": n1.id, "documents": [{"id": "doc-1", "name": "scn.pdf"}]},
            tenant_id=default_tenant.id, actor=ACTOR,
        )
        verdict = checklist_service.evaluate(n1.id, tenant_id=default_tenant.id, persist=False)
        row = _verdict_item(verdict, "notice_uploaded")
        assert row["status"] == "Pending"
        assert row["detail"] == "0 of 1 required document(s) found; missing: doc-1"
        url, headers = fake.calls[0]
        assert url == "http://docs.internal/api/documents/doc-1"
        assert headers["X-Tenant-ID"] == str(default_tenant.id)

    def test_auto_dms_remote_found(self, notice_stage, default_tenant, remote_documents):
        case, n1 = notice_stage
        remote_documents({"doc-1": 200})
        stage_notice_service.create_notice(
            case.id, {"stage_instance_id": n1.id, "documents": ["doc-1"]},
            tenant_id=default_tenant.id, actor=ACTOR,
        )
        verdict = checklist_service.evaluate(n1.id, tenant_id=default_tenant.id, persist=False)
        assert _verdict_item(verdict, "notice_uploaded")["status"] == "Auto✓"

    @pytest.mark.parametrize("failure", [requests.ConnectionError("refused"), requests.Timeout("slow"), 503])
    def test_document_service_failure_is_pending(self, notice_stage, default_tenant, remote_documents, failure):
        case, n1 = notice_stage
        remote_documents({"doc-1": failure})
        stage_notice_service.create_notice(
            case.id, {"stage_instance_id": n1.id, "documents": ["doc-1"]},
            tenant_id=default_tenant.id, actor=ACTOR,
        )
        verdict = checklist_service.evaluate(n1.id, tenant_id=default_tenant.id, persist=False)
        row = _verdict_item(verdict, "notice_uploaded")
        assert row["status"] == "Pending"
        assert row["detail"] == "document service unavailable"
        assert verdict["can_close"] is False

    def test_persist_false_writes_nothing(self, started_case, default_tenant):
        _, a1 = started_case
        verdict = checklist_service.evaluate(a1.id, tenant_id=default_tenant.id, persist=False)
        assert _verdict_item(verdict, "case_details")["status"] == "Auto✓"
        db.session.expire_all()
        stored = db.session.get(ChecklistItem, _item(a1, "case_details").id)
        assert stored.status == "Pending"
        assert stored.evaluated_at is None


class TestDocumentGateway:
    def test_duplicate_refs_resolved_once(self):
        fake = _FakeSession({"a": 200, "b": 404})
        gateway = DocumentGateway(session=fake, base_url="http://docs")
        lookup = gateway.resolve_many(["a", "b", "a", " ", None])
        assert lookup.found == ["a"]
        assert lookup.missing == ["b"]
        assert lookup.unavailable is False
        assert len(fake.calls) == 2

    def test_bearer_token_sent(self):
        fake = _FakeSession({"a": 200})
        DocumentGateway(session=fake, base_url="http://docs/", token="s3cret").exists("a")
        url, headers = fake.calls[0]
        assert url == "http://docs/documents/a"
        assert headers["Authorization"] == "Bearer s3cret"


# ═════════════════════════════════════════════════════════════════════════════
# Attest / override
# ═════════════════════════════════════════════════════════════════════════════


class TestAttestOverride:
    def test_attest_manual_item(self, started_case, default_tenant):
        _, a1 = started_case
        item = checklist_service.attest(
            _item(a1, "client_verified").id, tenant_id=default_tenant.id, actor=ACTOR,
            note="PAN and GSTIN checked", evidence_ref="doc-kyc",
        )
        assert item.status == "Attested"
        assert item.attested_by == ACTOR
        assert item.evidence_ref == "doc-kyc"
        assert checklist_service.evaluate(a1.id, tenant_id=default_tenant.id)["can_close"] is True

    def test_attested_auto_item_not_downgraded(self, make_case, default_tenant):
        from caseflow.services import stage_store

        case = make_case(assigned_to=None)
        instance, _ = stage_store.start_lifecycle(case.id, tenant_id=default_tenant.id, actor=ACTOR)
        checklist_service.attest(
            _item(instance, "case_assigned").id, tenant_id=default_tenant.id, actor=ACTOR,
            note="Assigned on paper file",
        )
        checklist_service.evaluate(instance.id, tenant_id=default_tenant.id)
        assert _item(instance, "case_assigned").status == "Attested"

    def test_cannot_attest_auto_satisfied_item(self, started_case, default_tenant):
        _, a1 = started_case
        checklist_service.evaluate(a1.id, tenant_id=default_tenant.id)
        with pytest.raises(InvalidStateError):
            checklist_service.attest(_item(a1, "case_details").id, tenant_id=default_tenant.id, actor=ACTOR)

    def test_override_needs_note(self, started_case, default_tenant):
        _, a1 = started_case
        with pytest.raises(ValidationError):
            checklist_service.override(
                _item(a1, "client_verified").id, tenant_id=default_tenant.id, actor=ACTOR, note="",
            )

    def test_override_blocking_item(self, started_case, default_tenant):
        _, a1 = started_case
        item = checklist_service.override(
            _item(a1, "client_verified").id, tenant_id=default_tenant.id, actor=ACTOR,
            note="Client abroad; verification after hearing",
        )
        assert item.status == "Override"
        assert item.note == "Client abroad; verification after hearing"

    def test_optional_item_cannot_be_overridden(self, started_case, default_tenant):
        _, a1 = started_case
        with pytest.raises(InvalidStateError):
            checklist_service.override(
                _item(a1, "legal_review").id, tenant_id=default_tenant.id, actor=ACTOR, note="n/a",
            )

    def test_items_on_closed_instance_are_frozen(self, started_case, default_tenant, walk_forward):
        case, a1 = started_case
        walk_forward(case, a1, "Notice")
        with pytest.raises(InvalidStateError):
            checklist_service.attest(_item(a1, "legal_review").id, tenant_id=default_tenant.id, actor=ACTOR)

    def test_attest_bumps_case_version(self, started_case, default_tenant):
        case, a1 = started_case
        before = db.session.get(LegalCase, case.id).stage_version
        checklist_service.attest(_item(a1, "client_verified").id, tenant_id=default_tenant.id, actor=ACTOR)
        assert db.session.get(LegalCase, case.id).stage_version == before + 1
