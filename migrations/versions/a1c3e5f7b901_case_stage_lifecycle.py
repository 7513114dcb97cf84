"""case_stage_lifecycle

Creates the case stage lifecycle schema:
  - tenants, cases, hearings
  - stage_instances            — one row per (case, stage, cycle); one Active per case
  - stage_transitions          — append-only ledger of moves between instances
  - stage_transition_approvals — immutable approval thread
  - stage_checklist_items      — gating conditions per instance
  - stage_workflow_steps       — notices / reply / hearings / closure per instance
  - stage_notices, stage_replies
  - audit_logs

Tables are created conditionally so the revision can run against a
development database that already received them via db.create_all().

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-17 09:12:44.381207
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c3e5f7b901'
down_revision = None
branch_labels = None
depends_on = None


def _tenant_fk():
    return sa.Column(
        "tenant_id", sa.Integer(),
        sa.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    if "tenants" not in existing:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False, unique=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=True),
        )

    if "cases" not in existing:
        op.create_table(
            "cases",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("case_number", sa.String(length=60), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("client_name", sa.String(length=255), nullable=True),
            sa.Column("assigned_to", sa.String(length=150), nullable=True),
            sa.Column("authority", sa.String(length=255), nullable=True),
            sa.Column("notice_no", sa.String(length=100), nullable=True),
            sa.Column("notice_type", sa.String(length=60), nullable=True),
            sa.Column("notice_date", sa.Date(), nullable=True),
            sa.Column("section_invoked", sa.String(length=120), nullable=True),
            sa.Column("tax_demand", sa.Numeric(15, 2), nullable=True),
            sa.Column("reply_due_date", sa.Date(), nullable=True),
            sa.Column("current_stage_key", sa.String(length=40), nullable=True),
            sa.Column("stage_version", sa.Integer(), nullable=False, server_default="0"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("tenant_id", "case_number", name="uq_cases_tenant_number"),
        )

    if "stage_instances" not in existing:
        op.create_table(
            "stage_instances",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("case_id", sa.Integer(), sa.ForeignKey("cases.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("stage_key", sa.String(length=40), nullable=False),
            sa.Column("cycle_no", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Active",
                      comment="Active | Completed | Remanded | Superseded"),
            _ts("started_at", nullable=False),
            _ts("ended_at"),
            sa.Column("created_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.UniqueConstraint("case_id", "stage_key", "cycle_no",
                                name="uq_stage_instances_case_stage_cycle"),
        )
        op.create_index(
            "uq_stage_instances_one_active", "stage_instances", ["case_id"], unique=True,
            sqlite_where=sa.text("status = 'Active'"),
            postgresql_where=sa.text("status = 'Active'"),
        )

    if "hearings" not in existing:
        op.create_table(
            "hearings",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("case_id", sa.Integer(), sa.ForeignKey("cases.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("stage_instance_id", sa.Integer(),
                      sa.ForeignKey("stage_instances.id", ondelete="SET NULL"),
                      nullable=True, index=True),
            sa.Column("hearing_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Scheduled"),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("created_at"),
        )

    if "stage_transitions" not in existing:
        op.create_table(
            "stage_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("case_id", sa.Integer(), sa.ForeignKey("cases.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("from_stage_instance_id", sa.Integer(),
                      sa.ForeignKey("stage_instances.id", ondelete="CASCADE"),
                      nullable=True, index=True),
            sa.Column("to_stage_instance_id", sa.Integer(),
                      sa.ForeignKey("stage_instances.id", ondelete="CASCADE"),
                      nullable=False, unique=True),
            sa.Column("from_stage_key", sa.String(length=40), nullable=True),
            sa.Column("to_stage_key", sa.String(length=40), nullable=False),
            sa.Column("transition_type", sa.String(length=20), nullable=False,
                      comment="Forward | Send Back | Remand"),
            sa.Column("reason_enum", sa.String(length=40), nullable=True),
            sa.Column("reason_text", sa.Text(), nullable=True),
            sa.Column("order_no", sa.String(length=100), nullable=True),
            sa.Column("order_date", sa.Date(), nullable=True),
            sa.Column("order_document_id", sa.String(length=100), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("attachments", sa.JSON(), nullable=False),
            sa.Column("validation_warnings", sa.JSON(), nullable=False),
            sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("approval_status", sa.String(length=20), nullable=False,
                      server_default="not_required",
                      comment="not_required | pending | approved | rejected"),
            sa.Column("is_confirmed", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("approved_by", sa.String(length=150), nullable=True),
            _ts("approved_at"),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("actor_role", sa.String(length=60), nullable=True),
            _ts("created_at", nullable=False),
        )
        op.create_index("ix_stage_transitions_case_created", "stage_transitions",
                        ["case_id", "created_at"])
        op.create_index("ix_stage_transitions_tenant_approval", "stage_transitions",
                        ["tenant_id", "approval_status"])

    if "stage_transition_approvals" not in existing:
        op.create_table(
            "stage_transition_approvals",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("transition_id", sa.Integer(),
                      sa.ForeignKey("stage_transitions.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("action", sa.String(length=20), nullable=False,
                      comment="request | approve | reject | comment"),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("actor_role", sa.String(length=60), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
        )

    if "stage_checklist_items" not in existing:
        op.create_table(
            "stage_checklist_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("stage_instance_id", sa.Integer(),
                      sa.ForeignKey("stage_instances.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("item_key", sa.String(length=60), nullable=False),
            sa.Column("label", sa.String(length=255), nullable=False),
            sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("rule_type", sa.String(length=20), nullable=False,
                      comment="auto_dms | auto_hearing | auto_field | manual"),
            sa.Column("rule_config", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Pending"),
            sa.Column("detail", sa.String(length=500), nullable=True),
            sa.Column("attested_by", sa.String(length=150), nullable=True),
            _ts("attested_at"),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column("evidence_ref", sa.String(length=255), nullable=True),
            _ts("evaluated_at"),
            sa.UniqueConstraint("stage_instance_id", "item_key", name="uq_checklist_instance_item"),
        )

    if "stage_workflow_steps" not in existing:
        op.create_table(
            "stage_workflow_steps",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("stage_instance_id", sa.Integer(),
                      sa.ForeignKey("stage_instances.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("step_key", sa.String(length=20), nullable=False,
                      comment="notices | reply | hearings | closure"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Pending"),
            sa.Column("completed_by", sa.String(length=150), nullable=True),
            _ts("completed_at"),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at"),
            sa.UniqueConstraint("stage_instance_id", "step_key", name="uq_workflow_step_instance_key"),
        )

    if "stage_notices" not in existing:
        op.create_table(
            "stage_notices",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("case_id", sa.Integer(), sa.ForeignKey("cases.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("stage_instance_id", sa.Integer(),
                      sa.ForeignKey("stage_instances.id", ondelete="SET NULL"),
                      nullable=True, index=True),
            sa.Column("notice_type", sa.String(length=60), nullable=True),
            sa.Column("notice_number", sa.String(length=100), nullable=True),
            sa.Column("notice_date", sa.Date(), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("offline_reference_no", sa.String(length=100), nullable=True),
            sa.Column("issuing_authority", sa.String(length=255), nullable=True),
            sa.Column("section_invoked", sa.String(length=120), nullable=True),
            sa.Column("financial_year", sa.String(length=20), nullable=True),
            sa.Column("tax_period_start", sa.Date(), nullable=True),
            sa.Column("tax_period_end", sa.Date(), nullable=True),
            sa.Column("tax_amount", sa.Numeric(15, 2), nullable=True),
            sa.Column("interest_amount", sa.Numeric(15, 2), nullable=True),
            sa.Column("penalty_amount", sa.Numeric(15, 2), nullable=True),
            sa.Column("tax_applicable", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("interest_applicable", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("penalty_applicable", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Received",
                      comment="Received | Reply Pending | Replied | Closed"),
            sa.Column("workflow_step", sa.String(length=20), nullable=False, server_default="notice"),
            sa.Column("documents", sa.JSON(), nullable=False),
            sa.Column("is_original", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("created_by", sa.String(length=150), nullable=False, server_default="system"),
            _ts("created_at", nullable=False),
            _ts("updated_at"),
        )
        op.create_index("ix_stage_notices_case_created", "stage_notices", ["case_id", "created_at"])

    if "stage_replies" not in existing:
        op.create_table(
            "stage_replies",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("notice_id", sa.Integer(),
                      sa.ForeignKey("stage_notices.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("case_id", sa.Integer(), sa.ForeignKey("cases.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("stage_instance_id", sa.Integer(),
                      sa.ForeignKey("stage_instances.id", ondelete="SET NULL"),
                      nullable=True, index=True),
            sa.Column("reply_date", sa.Date(), nullable=True),
            sa.Column("reply_reference", sa.String(length=100), nullable=True),
            sa.Column("filing_status", sa.String(length=20), nullable=False, server_default="Draft",
                      comment="Draft | Filed | Acknowledged"),
            sa.Column("filing_mode", sa.String(length=20), nullable=True),
            sa.Column("documents", sa.JSON(), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("filed_by", sa.String(length=150), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=False, server_default="system"),
            _ts("created_at", nullable=False),
            _ts("updated_at"),
        )

    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.Integer(),
                      sa.ForeignKey("tenants.id", ondelete="SET NULL"),
                      nullable=True, index=True),
            sa.Column("case_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("actor_role", sa.String(length=60), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            _ts("timestamp", nullable=False),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_case", "audit_logs", ["case_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    for table in (
        "audit_logs",
        "stage_replies",
        "stage_notices",
        "stage_workflow_steps",
        "stage_checklist_items",
        "stage_transition_approvals",
        "stage_transitions",
        "hearings",
        "stage_instances",
        "cases",
        "tenants",
    ):
        op.drop_table(table)
