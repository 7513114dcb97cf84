"""
Checklist Evaluator — per-stage gating conditions.

Each StageInstance gets its checklist from CHECKLIST_TEMPLATES when it is
created. Items are a closed set of rule kinds, each with one evaluation
function:

    auto_dms      N document references on this stage's notices / replies
                  resolve in the document store
    auto_hearing  N hearings held in this stage (falls back to hearings on
                  the case that carry no stage)
    auto_field    listed case fields are non-empty
    manual        attested or overridden by a person; never auto-changed

Re-evaluation never downgrades Attested / Override. An Auto✓ whose
condition no longer holds drops back to Pending.

Document lookups are network I/O. ``collect_document_evidence`` runs them
up front so callers can do it before they claim the case; ``evaluate_instance``
itself then only reads the database.

Usage:
    from caseflow.services import checklist_service

    verdict = checklist_service.evaluate(instance_id, tenant_id=1, persist=False)
    if not verdict["can_close"]:
        show(verdict["blocking_reasons"])
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from caseflow.core.exceptions import InvalidStateError, ValidationError
from caseflow.integrations.document_gateway import DocumentLookup, document_gateway
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.case import Hearing, LegalCase
from caseflow.models.lifecycle import (
    CHECK_ATTESTED,
    CHECK_AUTO,
    CHECK_OVERRIDE,
    CHECK_PENDING,
    RULE_AUTO_DMS,
    RULE_AUTO_FIELD,
    RULE_AUTO_HEARING,
    RULE_MANUAL,
    SATISFIED_CHECK_STATUSES,
    ChecklistItem,
    StageInstance,
)
from caseflow.models.stage_workflow import StageNotice, StageReply
from caseflow.services.helpers.scoped_queries import get_scoped
from caseflow.services.helpers.unit_of_work import atomic, claim_case, load_case_for_update

logger = logging.getLogger(__name__)

HEARING_CANCELLED = "Cancelled"
DOCUMENT_SERVICE_UNAVAILABLE = "document service unavailable"

# (item_key, label, required, rule_type, rule_config)
_APPEAL_TEMPLATE = [
    ("appeal_memo_filed", "Appeal memo filed with documents", True, RULE_AUTO_DMS,
     {"source": "replies", "min_count": 1}),
    ("appeal_hearing", "Hearing held before the forum", False, RULE_AUTO_HEARING, {"min_count": 1}),
    ("counsel_engaged", "Counsel engaged for the forum", True, RULE_MANUAL, {}),
]

CHECKLIST_TEMPLATES = {
    "Assessment": [
        ("case_details", "Case details captured", True, RULE_AUTO_FIELD,
         {"fields": ["case_number", "title", "client_name"]}),
        ("case_assigned", "Case assigned to team member", True, RULE_AUTO_FIELD,
         {"fields": ["assigned_to"]}),
        ("client_verified", "Client information verified", True, RULE_MANUAL, {}),
        ("legal_review", "Legal review completed", False, RULE_MANUAL, {}),
    ],
    "Notice": [
        ("notice_uploaded", "Notice document uploaded", True, RULE_AUTO_DMS,
         {"source": "notices", "min_count": 1}),
        ("notice_particulars", "Notice number and date recorded", True, RULE_AUTO_FIELD,
         {"fields": ["notice_no", "notice_date"]}),
        ("notice_reviewed", "Notice reviewed by counsel", True, RULE_MANUAL, {}),
    ],
    "Reply": [
        ("reply_documents", "Reply filed with documents", True, RULE_AUTO_DMS,
         {"source": "replies", "min_count": 1}),
        ("reply_approved", "Reply approved by partner", True, RULE_MANUAL, {}),
    ],
    "Hearing": [
        ("hearing_held", "Hearing attended", True, RULE_AUTO_HEARING, {"min_count": 1}),
        ("hearing_minutes", "Hearing minutes recorded", False, RULE_MANUAL, {}),
    ],
    "Order": [
        ("order_received", "Order copy uploaded", True, RULE_AUTO_DMS,
         {"source": "notices", "min_count": 1}),
        ("order_analysed", "Order analysed and client advised", True, RULE_MANUAL, {}),
    ],
    "First Appeal": _APPEAL_TEMPLATE,
    "Tribunal": _APPEAL_TEMPLATE,
    "High Court": _APPEAL_TEMPLATE,
    "Supreme Court": _APPEAL_TEMPLATE,
}


def _utcnow():
    return datetime.now(timezone.utc)


def _min_count(item) -> int:
    try:
        return max(int((item.rule_config or {}).get("min_count", 1)), 0)
    except (TypeError, ValueError):
        return 1


def document_ref(doc) -> str | None:
    """A document entry is either a bare reference or a dict with an ``id``."""
    if isinstance(doc, dict):
        doc = doc.get("id") or doc.get("ref")
    if doc is None:
        return None
    ref = str(doc).strip()
    return ref or None


# ── Template instantiation ───────────────────────────────────────────────────


def instantiate_template(instance: StageInstance) -> list[ChecklistItem]:
    """Create the checklist rows for a freshly created stage instance."""
    items = []
    for item_key, label, required, rule_type, rule_config in CHECKLIST_TEMPLATES.get(instance.stage_key, []):
        item = ChecklistItem(
            tenant_id=instance.tenant_id,
            stage_instance_id=instance.id,
            item_key=item_key,
            label=label,
            required=required,
            rule_type=rule_type,
            rule_config=dict(rule_config),
            status=CHECK_PENDING,
        )
        db.session.add(item)
        items.append(item)
    db.session.flush()
    return items


# ── Evidence (network I/O, no writes) ────────────────────────────────────────


def _source_documents(instance: StageInstance, source: str) -> list[str]:
    model = StageReply if source == "replies" else StageNotice
    rows = db.session.execute(
        select(model.documents).where(model.stage_instance_id == instance.id)
    ).scalars().all()
    refs = []
    for docs in rows:
        for doc in docs or []:
            ref = document_ref(doc)
            if ref:
                refs.append(ref)
    return refs


def collect_document_evidence(instance: StageInstance) -> dict[str, DocumentLookup]:
    """Resolve the documents every auto_dms item of *instance* looks at.

    Returns ``{item_key: DocumentLookup}``. Never raises on gateway failure.
    """
    evidence = {}
    for item in instance.checklist_items:
        if item.rule_type != RULE_AUTO_DMS:
            continue
        source = (item.rule_config or {}).get("source", "notices")
        evidence[item.item_key] = document_gateway.resolve_many(
            _source_documents(instance, source), tenant_id=instance.tenant_id,
        )
    return evidence


# ── Rule evaluation ──────────────────────────────────────────────────────────


def _eval_dms(item, instance, case, evidence):
    lookup = evidence.get(item.item_key)
    if lookup is None:
        source = (item.rule_config or {}).get("source", "notices")
        lookup = document_gateway.resolve_many(
            _source_documents(instance, source), tenant_id=instance.tenant_id,
        )
    need = _min_count(item)
    if lookup.found_count >= need:
        return True, f"{lookup.found_count} document(s) found"
    if lookup.unavailable:
        return None, DOCUMENT_SERVICE_UNAVAILABLE
    detail = f"{lookup.found_count} of {need} required document(s) found"
    if lookup.missing:
        detail += f"; missing: {', '.join(lookup.missing)}"
    return False, detail


def hearing_count(instance: StageInstance) -> int:
    """Live hearing count for a stage, falling back to stage-less case hearings."""
    base = select(func.count(Hearing.id)).where(
        Hearing.case_id == instance.case_id,
        Hearing.status != HEARING_CANCELLED,
    )
    count = db.session.execute(base.where(Hearing.stage_instance_id == instance.id)).scalar() or 0
    if count:
        return count
    return db.session.execute(base.where(Hearing.stage_instance_id.is_(None))).scalar() or 0


def _eval_hearing(item, instance, case, evidence):
    need = _min_count(item)
    count = hearing_count(instance)
    if count >= need:
        return True, f"{count} hearing(s) recorded"
    return False, f"{count} of {need} required hearing(s) recorded"


def _eval_field(item, instance, case, evidence):
    fields = (item.rule_config or {}).get("fields", [])
    missing = []
    for field in fields:
        value = getattr(case, field, None)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field)
    if missing:
        return False, f"missing case field(s): {', '.join(missing)}"
    return True, "all fields present"


_RULES = {
    RULE_AUTO_DMS: _eval_dms,
    RULE_AUTO_HEARING: _eval_hearing,
    RULE_AUTO_FIELD: _eval_field,
}


def _next_status(current: str, satisfied) -> str:
    if current in (CHECK_ATTESTED, CHECK_OVERRIDE):
        return current
    return CHECK_AUTO if satisfied else CHECK_PENDING


def can_close(items) -> bool:
    """True iff every required item is Auto✓ / Attested / Override.

    Accepts ChecklistItem rows or their ``to_dict()`` form.
    """
    for item in items:
        required = item["required"] if isinstance(item, dict) else item.required
        status = item["status"] if isinstance(item, dict) else item.status
        if required and status not in SATISFIED_CHECK_STATUSES:
            return False
    return True


def blocking_reasons(items) -> list[str]:
    reasons = []
    for item in items:
        if item["required"] and item["status"] not in SATISFIED_CHECK_STATUSES:
            reason = f"Checklist item '{item['item_key']}' ({item['label']}) is {item['status']}"
            if item.get("detail"):
                reason += f": {item['detail']}"
            reasons.append(reason)
    return reasons


def evaluate_instance(
    instance: StageInstance,
    *,
    persist: bool = True,
    evidence: dict[str, DocumentLookup] | None = None,
) -> dict:
    """Recompute every auto_* item, then produce the closeability verdict.

    With ``persist=False`` nothing is written; the returned items carry the
    statuses the evaluation would have stored.
    """
    case = db.session.get(LegalCase, instance.case_id)
    evidence = evidence or {}
    now = _utcnow()
    results = []
    for item in instance.checklist_items:
        row = item.to_dict()
        rule = _RULES.get(item.rule_type)
        if rule is not None:
            satisfied, detail = rule(item, instance, case, evidence)
            row["status"] = _next_status(item.status, satisfied)
            row["detail"] = detail
            if persist:
                item.status = row["status"]
                item.detail = detail[:500]
                item.evaluated_at = now
        results.append(row)

    if persist:
        db.session.flush()

    reasons = blocking_reasons(results)
    return {
        "stage_instance_id": instance.id,
        "items": results,
        "can_close": not reasons,
        "blocking_reasons": reasons,
    }


def evaluate(stage_instance_id: int, *, tenant_id: int, persist: bool = True) -> dict:
    """Evaluate the checklist of one stage instance.

    ``persist=True`` stores the recomputed statuses and commits.
    """
    instance = get_scoped(StageInstance, stage_instance_id, tenant_id=tenant_id)
    evidence = collect_document_evidence(instance)
    if not persist:
        return evaluate_instance(instance, persist=False, evidence=evidence)
    with atomic():
        return evaluate_instance(instance, persist=True, evidence=evidence)


# ── Attestation / override ───────────────────────────────────────────────────


def _load_item_for_action(item_id, tenant_id, expected_version):
    item = get_scoped(ChecklistItem, item_id, tenant_id=tenant_id)
    instance = item.stage_instance
    case = load_case_for_update(instance.case_id, tenant_id=tenant_id)
    claim_case(case, expected_version=expected_version)
    if not instance.is_active:
        raise InvalidStateError(
            "StageInstance", instance.id, instance.status,
            "Checklist items can only change on the Active stage instance",
        )
    return item, instance, case


def _stamp(item, status, actor, note, evidence_ref):
    item.status = status
    item.attested_by = actor
    item.attested_at = _utcnow()
    if note is not None:
        item.note = note
    if evidence_ref is not None:
        item.evidence_ref = evidence_ref


def attest(
    item_id: int,
    *,
    tenant_id: int,
    actor: str,
    actor_role: str | None = None,
    note: str | None = None,
    evidence_ref: str | None = None,
    expected_version: int | None = None,
) -> ChecklistItem:
    """Mark an item Attested. Manual items always; auto items only while not Auto✓."""
    with atomic():
        item, instance, case = _load_item_for_action(item_id, tenant_id, expected_version)
        if item.rule_type != RULE_MANUAL and item.status == CHECK_AUTO:
            raise InvalidStateError(
                "ChecklistItem", item.id, item.status,
                "Item is already satisfied automatically",
            )
        previous = item.status
        _stamp(item, CHECK_ATTESTED, actor, note, evidence_ref)
        write_audit(
            entity_type="checklist_item", entity_id=item.id, action="checklist.attest",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=case.id,
            diff={"item_key": item.item_key, "status": {"old": previous, "new": CHECK_ATTESTED},
                  "note": note, "evidence_ref": evidence_ref},
        )
    logger.info(
        "Checklist item %s attested on instance %s", item.item_key, instance.id,
        extra={"tenant_id": tenant_id, "case_id": case.id,
               "stage_instance_id": instance.id, "actor": actor},
    )
    return item


def apply_override(item: ChecklistItem, *, actor: str, note: str, evidence_ref: str | None = None) -> str:
    """Set Override on a blocking required item; returns the previous status.

    The caller holds the case claim.
    """
    if not (note or "").strip():
        raise ValidationError(
            f"Override of '{item.item_key}' requires a note",
            details={"note": "required"},
        )
    if not item.required or item.status in SATISFIED_CHECK_STATUSES:
        raise InvalidStateError(
            "ChecklistItem", item.id, item.status,
            "Only a required item that is blocking closure can be overridden",
        )
    previous = item.status
    _stamp(item, CHECK_OVERRIDE, actor, note.strip(), evidence_ref)
    return previous


def override(
    item_id: int,
    *,
    tenant_id: int,
    actor: str,
    note: str,
    actor_role: str | None = None,
    evidence_ref: str | None = None,
    expected_version: int | None = None,
) -> ChecklistItem:
    """Proceed despite an unmet condition. The note is the audit record of why."""
    if not (note or "").strip():
        raise ValidationError("Override requires a note", details={"note": "required"})
    with atomic():
        item, instance, case = _load_item_for_action(item_id, tenant_id, expected_version)
        previous = apply_override(item, actor=actor, note=note, evidence_ref=evidence_ref)
        write_audit(
            entity_type="checklist_item", entity_id=item.id, action="checklist.override",
            actor=actor, actor_role=actor_role, tenant_id=tenant_id, case_id=case.id,
            diff={"item_key": item.item_key, "status": {"old": previous, "new": CHECK_OVERRIDE},
                  "note": item.note},
        )
    logger.info(
        "Checklist item %s overridden on instance %s", item.item_key, instance.id,
        extra={"tenant_id": tenant_id, "case_id": case.id,
               "stage_instance_id": instance.id, "actor": actor},
    )
    return item


def apply_overrides(instance: StageInstance, overrides, *, actor: str) -> list[dict]:
    """Apply ``[{item_key, note}]`` overrides given with a stage move.

    Returns one warning dict per overridden item for the transition record.
    """
    by_key = {item.item_key: item for item in instance.checklist_items}
    warnings = []
    for entry in overrides or []:
        key = (entry or {}).get("item_key")
        item = by_key.get(key)
        if item is None:
            raise ValidationError(
                f"Unknown checklist item '{key}' for stage {instance.stage_key}",
                details={"checklist_overrides": f"unknown item_key {key!r}"},
            )
        if item.status in SATISFIED_CHECK_STATUSES:
            continue
        apply_override(item, actor=actor, note=entry.get("note") or "")
        warnings.append({"item_key": item.item_key, "label": item.label,
                         "status": CHECK_OVERRIDE, "note": item.note})
    db.session.flush()
    return warnings
