"""
Notice / reply sub-ledger tests.

Covers:
    - total_demand derived from applicable components only
    - input validation (dates, amounts, stage instance of another case)
    - notice status follows its replies; Closed is sticky
    - a filed reply can never return to Draft and cannot be deleted
    - deleting a notice: blocked by filed replies, cascades Draft replies
    - ensure_original_notice: created once from intake fields
    - due date status labels
"""

from datetime import date
from decimal import Decimal

import pytest

from caseflow.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from caseflow.models import db
from caseflow.models.stage_workflow import StageNotice, StageReply
from caseflow.services import stage_notice_service, stage_reply_service

ACTOR = "asha.partner"


@pytest.fixture()
def notice(started_case, default_tenant):
    case, a1 = started_case
    return stage_notice_service.create_notice(
        case.id,
        {
            "stage_instance_id": a1.id,
            "notice_type": "Reminder",
            "notice_number": "REM-1",
            "notice_date": "2026-04-01",
            "due_date": "2026-04-15",
        },
        tenant_id=default_tenant.id, actor=ACTOR,
    )


def _reply(notice, tenant_id, **data):
    return stage_reply_service.create_reply(notice.id, data, tenant_id=tenant_id, actor=ACTOR)


# ═════════════════════════════════════════════════════════════════════════════
# Notices
# ═════════════════════════════════════════════════════════════════════════════


class TestNoticeCreate:
    def test_total_demand_sums_applicable_components(self, started_case, default_tenant):
        case, _ = started_case
        notice = stage_notice_service.create_notice(
            case.id,
            {"tax_amount": 100000, "interest_amount": "5000", "penalty_amount": 10000,
             "penalty_applicable": False},
            tenant_id=default_tenant.id, actor=ACTOR,
        )
        assert notice.total_demand == Decimal("105000")
        assert notice.to_dict()["total_demand"] == 105000.0

    def test_missing_components_count_as_zero(self, started_case, default_tenant):
        case, _ = started_case
        notice = stage_notice_service.create_notice(
            case.id, {"tax_amount": "2500.50"}, tenant_id=default_tenant.id, actor=ACTOR,
        )
        assert notice.total_demand == Decimal("2500.50")

    def test_invalid_fields_reported_together(self, started_case, default_tenant):
        case, _ = started_case
        with pytest.raises(ValidationError) as exc:
            stage_notice_service.create_notice(
                case.id,
                {"notice_date": "yesterday", "tax_amount": -1, "status": "Lost"},
                tenant_id=default_tenant.id, actor=ACTOR,
            )
        assert set(exc.value.details) == {"notice_date", "tax_amount", "status"}

    def test_due_date_before_notice_date_rejected(self, started_case, default_tenant):
        case, _ = started_case
        with pytest.raises(ValidationError) as exc:
            stage_notice_service.create_notice(
                case.id, {"notice_date": "2026-04-10", "due_date": "2026-04-01"},
                tenant_id=default_tenant.id, actor=ACTOR,
            )
        assert "due_date" in exc.value.details

    def test_stage_instance_must_belong_to_case(self, started_case, make_case, default_tenant):
        _, a1 = started_case
        other = make_case()
        with pytest.raises(ValidationError) as exc:
            stage_notice_service.create_notice(
                other.id, {"stage_instance_id": a1.id}, tenant_id=default_tenant.id, actor=ACTOR,
            )
        assert "stage_instance_id" in exc.value.details

    def test_list_by_stage_instance(self, notice, started_case, default_tenant):
        case, a1 = started_case
        by_stage = stage_notice_service.list_notices(tenant_id=default_tenant.id, stage_instance_id=a1.id)
        by_case = stage_notice_service.list_notices(tenant_id=default_tenant.id, case_id=case.id)
        assert [n.notice_number for n in by_stage] == [case.notice_no, "REM-1"]
        assert len(by_case) == 2


class TestOriginalNotice:
    def test_created_from_intake_fields(self, started_case):
        case, a1 = started_case
        original = db.session.query(StageNotice).filter_by(case_id=case.id, is_original=True).one()
        assert original.notice_number == case.notice_no
        assert original.notice_date == date(2026, 3, 1)
        assert original.due_date == date(2026, 4, 1)
        assert original.tax_amount == Decimal("100000")
        assert original.stage_instance_id == a1.id

    def test_created_only_once(self, started_case, default_tenant):
        case, a1 = started_case
        again = stage_notice_service.ensure_original_notice(case.id, a1.id, tenant_id=default_tenant.id)
        db.session.commit()
        assert again.is_original is True
        assert db.session.query(StageNotice).filter_by(case_id=case.id, is_original=True).count() == 1


class TestDueDateStatus:
    @pytest.mark.parametrize(
        ("today", "label", "overdue"),
        [
            (date(2026, 4, 10), "Due in 5 day(s)", False),
            (date(2026, 4, 15), "Due today", False),
            (date(2026, 4, 18), "Overdue by 3 day(s)", True),
        ],
    )
    def test_labels(self, notice, today, label, overdue):
        status = stage_notice_service.get_due_date_status(notice, today=today)
        assert status["label"] == label
        assert status["is_overdue"] is overdue

    def test_replied_notice_not_overdue(self, notice, default_tenant):
        _reply(notice, default_tenant.id, filing_status="Filed")
        status = stage_notice_service.get_due_date_status(notice, today=date(2026, 5, 1))
        assert status == {"days_left": None, "is_overdue": False, "label": "Replied"}


# ═════════════════════════════════════════════════════════════════════════════
# Replies & notice status
# ═════════════════════════════════════════════════════════════════════════════


class TestReplies:
    def test_draft_marks_reply_pending(self, notice, default_tenant):
        _reply(notice, default_tenant.id)
        assert db.session.get(StageNotice, notice.id).status == "Reply Pending"

    def test_filed_reply_marks_replied(self, notice, default_tenant):
        reply = _reply(notice, default_tenant.id, filing_status="Filed", filing_mode="Portal")
        refreshed = db.session.get(StageNotice, notice.id)
        assert refreshed.status == "Replied"
        assert refreshed.workflow_step == "reply"
        assert reply.filed_by == ACTOR
        assert reply.reply_date is not None
        assert reply.stage_instance_id == notice.stage_instance_id

    def test_filing_a_draft_updates_notice(self, notice, default_tenant):
        reply = _reply(notice, default_tenant.id)
        stage_reply_service.update_reply(
            reply.id, {"filing_status": "Filed"}, tenant_id=default_tenant.id, actor=ACTOR,
        )
        assert db.session.get(StageNotice, notice.id).status == "Replied"

    def test_filed_reply_cannot_return_to_draft(self, notice, default_tenant):
        reply = _reply(notice, default_tenant.id, filing_status="Filed")
        with pytest.raises(InvalidStateError):
            stage_reply_service.update_reply(
                reply.id, {"filing_status": "Draft"}, tenant_id=default_tenant.id, actor=ACTOR,
            )
        assert db.session.get(StageReply, reply.id).filing_status == "Filed"

    def test_reply_cannot_move_to_other_notice(self, notice, default_tenant):
        reply = _reply(notice, default_tenant.id)
        with pytest.raises(ValidationError):
            stage_reply_service.update_reply(
                reply.id, {"notice_id": notice.id + 1}, tenant_id=default_tenant.id, actor=ACTOR,
            )

    def test_case_mismatch_rejected(self, notice, make_case, default_tenant):
        other = make_case()
        with pytest.raises(ValidationError):
            _reply(notice, default_tenant.id, case_id=other.id)

    @pytest.mark.parametrize("field", ["case_id", "stage_instance_id"])
    def test_non_numeric_ids_rejected(self, notice, default_tenant, field):
        with pytest.raises(ValidationError) as exc:
            _reply(notice, default_tenant.id, **{field: "abc"})
        assert exc.value.details[field] == "must be an integer id"

    def test_bad_filing_mode(self, notice, default_tenant):
        with pytest.raises(ValidationError) as exc:
            _reply(notice, default_tenant.id, filing_mode="Fax")
        assert "filing_mode" in exc.value.details

    def test_closed_notice_stays_closed(self, notice, default_tenant):
        stage_notice_service.update_notice(
            notice.id, {"status": "Closed"}, tenant_id=default_tenant.id, actor=ACTOR,
        )
        _reply(notice, default_tenant.id)
        assert db.session.get(StageNotice, notice.id).status == "Closed"

    def test_filed_reply_cannot_be_deleted(self, notice, default_tenant):
        reply = _reply(notice, default_tenant.id, filing_status="Acknowledged")
        with pytest.raises(ConflictError):
            stage_reply_service.delete_reply(reply.id, tenant_id=default_tenant.id, actor=ACTOR)

    def test_deleting_last_draft_resets_notice(self, notice, default_tenant):
        reply = _reply(notice, default_tenant.id)
        stage_reply_service.delete_reply(reply.id, tenant_id=default_tenant.id, actor=ACTOR)
        assert db.session.get(StageNotice, notice.id).status == "Received"


# ═════════════════════════════════════════════════════════════════════════════
# Notice deletion
# ═════════════════════════════════════════════════════════════════════════════


class TestNoticeDelete:
    def test_blocked_by_filed_reply(self, notice, default_tenant):
        filed = _reply(notice, default_tenant.id, filing_status="Filed")
        with pytest.raises(ConflictError) as exc:
            stage_notice_service.delete_notice(notice.id, tenant_id=default_tenant.id, actor=ACTOR)
        assert exc.value.details == {"reply_ids": [filed.id]}
        assert db.session.get(StageNotice, notice.id) is not None

    def test_removes_draft_replies(self, notice, default_tenant):
        draft = _reply(notice, default_tenant.id)
        notice_id, draft_id = notice.id, draft.id
        stage_notice_service.delete_notice(notice_id, tenant_id=default_tenant.id, actor=ACTOR)
        assert db.session.get(StageNotice, notice_id) is None
        assert db.session.get(StageReply, draft_id) is None

    def test_other_tenant_cannot_delete(self, notice):
        from caseflow.models.auth import Tenant

        other = Tenant(name="Other Firm", slug="other-firm")
        db.session.add(other)
        db.session.commit()
        with pytest.raises(NotFoundError):
            stage_notice_service.delete_notice(notice.id, tenant_id=other.id, actor=ACTOR)
