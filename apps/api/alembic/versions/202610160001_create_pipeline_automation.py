"""create pipeline automation tables

Revision ID: 202610160001
Revises:
Create Date: 2026-10-16 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610160001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("actor_type", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=128), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_audit_logs_id", "audit_logs", ["id"], unique=False)
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"], unique=False)
    op.create_index("ix_audit_logs_tenant_action", "audit_logs", ["tenant_id", "action"], unique=False)

    op.create_table(
        "crm_pipeline_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("stage_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_crm_pipeline_stage_tenant_name"),
    )
    op.create_index(
        "ix_crm_pipeline_stage_tenant_active",
        "crm_pipeline_stage",
        ["tenant_id", "is_active"],
        unique=False,
    )

    op.create_table(
        "crm_position",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_assigned_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("permission_set", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "title", name="uq_crm_position_tenant_title"),
    )

    op.create_table(
        "crm_team_member",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("position_id", sa.Uuid(), nullable=True),
        sa.Column("position_title", sa.String(length=255), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["position_id"], ["crm_position.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_team_member_eligible",
        "crm_team_member",
        ["position_id", "status", "is_available"],
        unique=False,
    )
    op.create_index(
        "ix_crm_team_member_tenant_title",
        "crm_team_member",
        ["tenant_id", "position_title"],
        unique=False,
    )

    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("serial_number", sa.String(length=64), nullable=True),
        sa.Column("company_name", sa.Text(), nullable=True),
        sa.Column("contact_first_name", sa.Text(), nullable=True),
        sa.Column("contact_last_name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("pipeline_stage", sa.String(length=128), nullable=True),
        sa.Column("client_reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("assigned_member_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["assigned_member_id"], ["crm_team_member.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_tenant_stage", "crm_lead", ["tenant_id", "pipeline_stage"], unique=False)
    op.create_index("ix_crm_lead_assigned_member", "crm_lead", ["assigned_member_id"], unique=False)

    op.create_table(
        "crm_automation_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("pipeline_stage", sa.String(length=128), nullable=False),
        sa.Column("rule_config", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_automation_rule_match",
        "crm_automation_rule",
        ["tenant_id", "pipeline_stage", "is_active"],
        unique=False,
    )

    op.create_table(
        "crm_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("assigned_member_id", sa.Uuid(), nullable=False),
        sa.Column("automation_rule_id", sa.Uuid(), nullable=True),
        sa.Column("pipeline_stage", sa.String(length=128), nullable=True),
        sa.Column("created_by_type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["assigned_member_id"], ["crm_team_member.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_task_lead_stage_status",
        "crm_task",
        ["lead_id", "pipeline_stage", "status"],
        unique=False,
    )
    op.create_index(
        "ix_crm_task_assignment",
        "crm_task",
        ["assigned_member_id", "status", "due_at"],
        unique=False,
    )

    op.create_table(
        "crm_notification",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("recipient_member_id", sa.Uuid(), nullable=False),
        sa.Column("notification_type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_notification_recipient_read_created",
        "crm_notification",
        ["recipient_member_id", "is_read", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_stage_visit",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("stage", sa.String(length=128), nullable=False),
        sa.Column("business_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("lead_id", "stage", name="uq_crm_stage_visit_lead_stage"),
    )


def downgrade() -> None:
    op.drop_table("crm_stage_visit")
    op.drop_index("ix_crm_notification_recipient_read_created", table_name="crm_notification")
    op.drop_table("crm_notification")
    op.drop_index("ix_crm_task_assignment", table_name="crm_task")
    op.drop_index("ix_crm_task_lead_stage_status", table_name="crm_task")
    op.drop_table("crm_task")
    op.drop_index("ix_crm_automation_rule_match", table_name="crm_automation_rule")
    op.drop_table("crm_automation_rule")
    op.drop_index("ix_crm_lead_assigned_member", table_name="crm_lead")
    op.drop_index("ix_crm_lead_tenant_stage", table_name="crm_lead")
    op.drop_table("crm_lead")
    op.drop_index("ix_crm_team_member_tenant_title", table_name="crm_team_member")
    op.drop_index("ix_crm_team_member_eligible", table_name="crm_team_member")
    op.drop_table("crm_team_member")
    op.drop_table("crm_position")
    op.drop_index("ix_crm_pipeline_stage_tenant_active", table_name="crm_pipeline_stage")
    op.drop_table("crm_pipeline_stage")
    op.drop_index("ix_audit_logs_tenant_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_index("ix_audit_logs_id", table_name="audit_logs")
    op.drop_table("audit_logs")
