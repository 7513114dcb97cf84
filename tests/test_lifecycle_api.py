"""
Lifecycle REST API tests — request context, status codes, error bodies.

Covers:
    - tenant resolution: missing / malformed / unknown / inactive → 403,
      health endpoints need no tenant
    - actor header required for mutations
    - start → 201, state, history endpoints
    - error mapping: 404, 422, 409 (ERR_INVALID_STATE / ERR_CONFLICT_STATE),
      423 with top-level blocking_reasons
    - approval endpoints, notice / reply endpoints, checklist endpoints
"""

import pytest

from caseflow.models import db
from caseflow.models.auth import Tenant

BASE = "/api/v1"


def _items(res):
    return res.get_json()["items"]


def _start(client, headers, case):
    res = client.post(f"{BASE}/cases/{case.id}/lifecycle/start", json={}, headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _overrides(client, headers, instance_id):
    items = client.get(f"{BASE}/stage-instances/{instance_id}/checklist", headers=headers).get_json()["items"]
    return [
        {"item_key": i["item_key"], "note": "Verified offline"}
        for i in items if i["required"]
    ]


def _advance(client, headers, case, instance_id, to_stage_key, **extra):
    payload = {
        "from_stage_instance_id": instance_id,
        "to_stage_key": to_stage_key,
        "checklist_overrides": _overrides(client, headers, instance_id),
    }
    payload.update(extra)
    return client.post(f"{BASE}/cases/{case.id}/lifecycle/advance", json=payload, headers=headers)


# ═════════════════════════════════════════════════════════════════════════════
# Request context
# ═════════════════════════════════════════════════════════════════════════════


class TestTenantContext:
    def test_health_needs_no_tenant(self, client):
        res = client.get(f"{BASE}/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_ready_reports_database_and_request_headers(self, client):
        res = client.get(f"{BASE}/health/ready", headers={"X-Request-ID": "req-42"})
        assert res.status_code == 200
        body = res.get_json()
        assert body["database"]["ok"] is True
        assert body["document_service"] == "local"
        assert res.headers["X-Request-ID"] == "req-42"
        assert "X-Request-Duration-Ms" in res.headers

    def test_missing_tenant(self, client, make_case):
        case = make_case()
        res = client.get(f"{BASE}/cases/{case.id}/lifecycle")
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_malformed_tenant(self, client, make_case):
        case = make_case()
        res = client.get(f"{BASE}/cases/{case.id}/lifecycle", headers={"X-Tenant-ID": "acme"})
        assert res.status_code == 403

    def test_unknown_tenant(self, client, make_case):
        case = make_case()
        res = client.get(f"{BASE}/cases/{case.id}/lifecycle", headers={"X-Tenant-ID": "999999"})
        assert res.status_code == 403
        assert res.get_json()["error"] == "Tenant not found"

    def test_inactive_tenant(self, client):
        tenant = Tenant(name="Dormant LLP", slug="dormant", is_active=False)
        db.session.add(tenant)
        db.session.commit()
        res = client.get(f"{BASE}/approvals/pending", headers={"X-Tenant-ID": str(tenant.id)})
        assert res.status_code == 403
        assert res.get_json()["error"] == "Tenant account is deactivated"

    def test_tenant_from_query_string(self, client, default_tenant):
        res = client.get(f"{BASE}/approvals/pending?tenant_id={default_tenant.id}")
        assert res.status_code == 200

    def test_other_tenant_sees_not_found(self, client, make_case):
        case = make_case()
        other = Tenant(name="Other Firm", slug="other-firm")
        db.session.add(other)
        db.session.commit()
        res = client.get(f"{BASE}/cases/{case.id}/lifecycle", headers={"X-Tenant-ID": str(other.id)})
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_mutation_needs_actor(self, client, make_case, default_tenant):
        case = make_case()
        res = client.post(
            f"{BASE}/cases/{case.id}/lifecycle/start", json={},
            headers={"X-Tenant-ID": str(default_tenant.id)},
        )
        assert res.status_code == 422
        assert res.get_json()["details"] == {"actor": "required"}


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


class TestLifecycleEndpoints:
    def test_start_and_read_state(self, client, headers, make_case):
        case = make_case()
        started = _start(client, headers, case)
        assert started["stage_instance"]["stage_key"] == "Assessment"
        assert started["transition"]["type"] == "Forward"
        assert started["original_notice"]["notice_number"] == case.notice_no

        state = client.get(f"{BASE}/cases/{case.id}/lifecycle", headers=headers).get_json()
        assert state["current_stage_key"] == "Assessment"
        assert state["active_instance"]["id"] == started["stage_instance"]["id"]
        assert state["available_stages"]["Forward"][0] == "Notice"
        assert state["available_stages"]["Send Back"] == []
        assert state["pending_approval"] is None

    def test_start_twice_is_invalid_state(self, client, headers, make_case):
        case = make_case()
        _start(client, headers, case)
        res = client.post(f"{BASE}/cases/{case.id}/lifecycle/start", json={}, headers=headers)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_INVALID_STATE"

    def test_unknown_case(self, client, headers):
        res = client.get(f"{BASE}/cases/424242/lifecycle", headers=headers)
        assert res.status_code == 404

    def test_advance_blocked_by_checklist(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        res = client.post(
            f"{BASE}/cases/{case.id}/lifecycle/advance",
            json={"from_stage_instance_id": instance_id, "to_stage_key": "Notice"},
            headers=headers,
        )
        body = res.get_json()
        assert res.status_code == 423
        assert body["code"] == "ERR_BLOCKED"
        assert body["blocking_reasons"]

    def test_advance_with_overrides(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        res = _advance(client, headers, case, instance_id, "Notice")
        body = res.get_json()
        assert res.status_code == 201
        assert body["stage_instance"]["stage_key"] == "Notice"
        assert {w["status"] for w in body["transition"]["validation_warnings"]} == {"Override"}

    def test_stale_expected_version(self, client, headers, make_case):
        case = make_case()
        started = _start(client, headers, case)
        res = _advance(
            client, headers, case, started["stage_instance"]["id"], "Notice",
            expected_version=started["stage_version"] - 1,
        )
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_bad_expected_version(self, client, headers, make_case):
        case = make_case()
        started = _start(client, headers, case)
        res = _advance(client, headers, case, started["stage_instance"]["id"], "Notice",
                       expected_version="latest")
        assert res.status_code == 422

    def test_remand_without_order_details(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        res = client.post(
            f"{BASE}/cases/{case.id}/lifecycle/remand",
            json={"from_stage_instance_id": instance_id, "to_stage_key": "Assessment",
                  "reason_enum": "Court Direction"},
            headers=headers,
        )
        assert res.status_code == 201, res.get_json()
        body = res.get_json()
        assert (body["stage_instance"]["stage_key"], body["stage_instance"]["cycle_no"]) == ("Assessment", 2)
        assert body["transition"]["order_no"] is None

    def test_remand_requires_reason(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        res = client.post(
            f"{BASE}/cases/{case.id}/lifecycle/remand",
            json={"from_stage_instance_id": instance_id, "to_stage_key": "Assessment",
                  "order_no": "ORD-1", "order_date": "2026-06-01"},
            headers=headers,
        )
        assert res.status_code == 422
        assert res.get_json()["details"]["reason_enum"] == "required for Remand"

    def test_history_endpoints(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        _advance(client, headers, case, instance_id, "Notice")

        stages = _items(client.get(f"{BASE}/cases/{case.id}/lifecycle/stages", headers=headers))
        assert [(s["stage_key"], s["status"]) for s in stages] == [
            ("Assessment", "Completed"), ("Notice", "Active"),
        ]
        ledger = _items(client.get(f"{BASE}/cases/{case.id}/lifecycle/transitions", headers=headers))
        assert [t["to_stage_key"] for t in ledger] == ["Assessment", "Notice"]
        audit = client.get(f"{BASE}/cases/{case.id}/lifecycle/audit", headers=headers).get_json()
        assert audit["total"] >= 2

    def test_available_stages_rejects_unknown_type(self, client, headers, make_case):
        case = make_case()
        _start(client, headers, case)
        res = client.get(f"{BASE}/cases/{case.id}/lifecycle/available-stages?type=Sideways", headers=headers)
        assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════════
# Approvals
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def sent_back(client, headers, make_case):
    """Case moved Assessment → Notice, then sent back; approval pending."""
    case = make_case()
    a1 = _start(client, headers, case)["stage_instance"]["id"]
    n1 = _advance(client, headers, case, a1, "Notice").get_json()["stage_instance"]["id"]
    res = client.post(
        f"{BASE}/cases/{case.id}/lifecycle/send-back",
        json={"from_stage_instance_id": n1, "to_stage_key": "Assessment", "reason_enum": "Incorrect Filing"},
        headers=headers,
    )
    assert res.status_code == 201, res.get_json()
    return case, res.get_json()


class TestApprovalEndpoints:
    def test_pending_send_back_listed(self, client, headers, sent_back):
        case, moved = sent_back
        transition = moved["transition"]
        assert transition["approval_status"] == "pending"
        assert [a["action"] for a in transition["approvals"]] == ["request"]

        pending = _items(client.get(f"{BASE}/approvals/pending?case_id={case.id}", headers=headers))
        assert [t["id"] for t in pending] == [transition["id"]]
        state = client.get(f"{BASE}/cases/{case.id}/lifecycle", headers=headers).get_json()
        assert state["pending_approval"]["id"] == transition["id"]

    def test_next_move_locked_while_pending(self, client, headers, sent_back):
        case, moved = sent_back
        res = _advance(client, headers, case, moved["stage_instance"]["id"], "Notice")
        assert res.status_code == 423
        assert "pending approval" in res.get_json()["blocking_reasons"][0]

    def test_approve(self, client, approver_headers, sent_back):
        _, moved = sent_back
        res = client.post(
            f"{BASE}/transitions/{moved['transition']['id']}/approval/decide",
            json={"approve": True, "comments": "Filing error confirmed"},
            headers=approver_headers,
        )
        body = res.get_json()
        assert res.status_code == 200
        assert body["is_confirmed"] is True
        assert body["approved_by"] == "vikram.senior"
        assert [a["action"] for a in body["approvals"]] == ["request", "approve"]

    def test_mover_cannot_approve(self, client, headers, sent_back):
        _, moved = sent_back
        res = client.post(
            f"{BASE}/transitions/{moved['transition']['id']}/approval/decide",
            json={"approve": True}, headers=headers,
        )
        assert res.status_code == 422

    def test_approve_flag_must_be_bool(self, client, approver_headers, sent_back):
        _, moved = sent_back
        res = client.post(
            f"{BASE}/transitions/{moved['transition']['id']}/approval/decide",
            json={"approve": "yes"}, headers=approver_headers,
        )
        assert res.status_code == 422

    def test_double_decision_conflicts(self, client, approver_headers, sent_back):
        _, moved = sent_back
        url = f"{BASE}/transitions/{moved['transition']['id']}/approval/decide"
        assert client.post(url, json={"approve": False}, headers=approver_headers).status_code == 200
        res = client.post(url, json={"approve": True}, headers=approver_headers)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_comment_and_thread(self, client, approver_headers, sent_back):
        _, moved = sent_back
        transition_id = moved["transition"]["id"]
        res = client.post(
            f"{BASE}/transitions/{transition_id}/approval/comment",
            json={"comments": "Which document had the error?"}, headers=approver_headers,
        )
        assert res.status_code == 201
        thread = client.get(f"{BASE}/transitions/{transition_id}/approval", headers=approver_headers).get_json()
        assert [a["action"] for a in thread["approvals"]] == ["request", "comment"]
        assert thread["transition"]["is_confirmed"] is False

    def test_amend_pending_transition(self, client, headers, sent_back):
        _, moved = sent_back
        res = client.put(
            f"{BASE}/transitions/{moved['transition']['id']}",
            json={"reason_text": "Wrong GSTIN on the notice"}, headers=headers,
        )
        assert res.status_code == 200
        assert res.get_json()["reason_text"] == "Wrong GSTIN on the notice"


# ═════════════════════════════════════════════════════════════════════════════
# Stage workflow, checklist, notices
# ═════════════════════════════════════════════════════════════════════════════


class TestStageEndpoints:
    def test_workflow_state(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        state = client.get(f"{BASE}/stage-instances/{instance_id}/workflow", headers=headers).get_json()
        assert state["current_step"] == "notices"
        assert state["notice_count"] == 1

    def test_skip_then_complete_blocked(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        base = f"{BASE}/stage-instances/{instance_id}/workflow/steps"
        assert client.post(f"{base}/notices/skip", json={"reason": "Handled in parent"},
                           headers=headers).status_code == 200
        res = client.post(f"{base}/reply/complete", json={}, headers=headers)
        assert res.status_code == 423
        assert "file a reply first" in res.get_json()["blocking_reasons"][0]

    def test_skip_without_reason(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        res = client.post(
            f"{BASE}/stage-instances/{instance_id}/workflow/steps/notices/skip", json={}, headers=headers,
        )
        assert res.status_code == 422

    def test_checklist_attest(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        verdict = client.get(f"{BASE}/stage-instances/{instance_id}/checklist", headers=headers).get_json()
        assert verdict["can_close"] is False
        manual = next(i for i in verdict["items"] if i["item_key"] == "client_verified")

        res = client.post(
            f"{BASE}/checklist-items/{manual['id']}/attest",
            json={"note": "Spoke to the CFO"}, headers=headers,
        )
        assert res.status_code == 200
        assert res.get_json()["status"] == "Attested"

    def test_override_needs_note(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        items = client.get(f"{BASE}/stage-instances/{instance_id}/checklist", headers=headers).get_json()["items"]
        required = next(i for i in items if i["required"])
        res = client.post(f"{BASE}/checklist-items/{required['id']}/override", json={}, headers=headers)
        assert res.status_code == 422

    def test_notice_and_reply_flow(self, client, headers, make_case):
        case = make_case()
        instance_id = _start(client, headers, case)["stage_instance"]["id"]
        res = client.post(
            f"{BASE}/cases/{case.id}/notices",
            json={"stage_instance_id": instance_id, "notice_number": "REM-7",
                  "notice_date": "2026-04-01", "due_date": "2026-04-20", "tax_amount": 5000},
            headers=headers,
        )
        assert res.status_code == 201
        notice = res.get_json()
        assert notice["status"] == "Received"
        assert notice["due_date_status"]["label"]

        res = client.post(
            f"{BASE}/notices/{notice['id']}/replies",
            json={"filing_status": "Filed", "filing_mode": "Email"}, headers=headers,
        )
        assert res.status_code == 201
        assert client.get(f"{BASE}/notices/{notice['id']}", headers=headers).get_json()["status"] == "Replied"
        replies = client.get(f"{BASE}/stage-instances/{instance_id}/replies", headers=headers).get_json()
        assert replies["total"] == 1
        assert replies["items"][0]["filing_status"] == "Filed"

        res = client.delete(f"{BASE}/notices/{notice['id']}", headers=headers)
        assert res.status_code == 409
        assert len(res.get_json()["details"]["reply_ids"]) == 1

        listed = _items(client.get(f"{BASE}/stage-instances/{instance_id}/notices", headers=headers))
        assert len(listed) == 2

    def test_notice_validation(self, client, headers, make_case):
        case = make_case()
        _start(client, headers, case)
        res = client.post(f"{BASE}/cases/{case.id}/notices", json={"tax_amount": "lots"}, headers=headers)
        assert res.status_code == 422
        assert "tax_amount" in res.get_json()["details"]

    def test_reply_with_non_numeric_case_id(self, client, headers, make_case):
        case = make_case()
        _start(client, headers, case)
        notice = _items(client.get(f"{BASE}/cases/{case.id}/notices", headers=headers))[0]
        res = client.post(
            f"{BASE}/notices/{notice['id']}/replies",
            json={"case_id": "not-a-number", "filing_status": "Draft"}, headers=headers,
        )
        assert res.status_code == 422
        assert res.get_json()["details"]["case_id"] == "must be an integer id"
