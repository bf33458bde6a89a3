"""create automation rule, log and side-effect tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "automation_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_tags", sa.JSON(), nullable=False),
        sa.Column("trigger_mode", sa.String(length=8), nullable=False, server_default="any"),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("action_config", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_rule_org_enabled", "automation_rule", ["organization_id", "enabled"], unique=False)
    op.create_index("ix_automation_rule_org_created", "automation_rule", ["organization_id", "created_at"], unique=False)

    op.create_table(
        "automation_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("rule_id", sa.Uuid(), nullable=True),
        sa.Column("export_id", sa.String(length=255), nullable=False),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("event_context", sa.JSON(), nullable=False),
        sa.Column("retry_of_log_id", sa.Uuid(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_log_org_created", "automation_log", ["organization_id", "created_at"], unique=False)
    op.create_index("ix_automation_log_org_rule", "automation_log", ["organization_id", "rule_id"], unique=False)
    op.create_index("ix_automation_log_org_status", "automation_log", ["organization_id", "status"], unique=False)
    op.create_index("ix_automation_log_export_id", "automation_log", ["export_id"], unique=False)

    op.create_table(
        "automation_notification",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("rule_id", sa.Uuid(), nullable=True),
        sa.Column("log_id", sa.Uuid(), nullable=False),
        sa.Column("export_id", sa.String(length=255), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="info"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Queued"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("log_id", name="uq_automation_notification_log_id"),
    )
    op.create_index(
        "ix_automation_notification_org_created",
        "automation_notification",
        ["organization_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "export_review_flag",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("rule_id", sa.Uuid(), nullable=True),
        sa.Column("log_id", sa.Uuid(), nullable=False),
        sa.Column("export_id", sa.String(length=255), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="high"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Open"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("log_id", name="uq_export_review_flag_log_id"),
    )
    op.create_index("ix_export_review_flag_org_status", "export_review_flag", ["organization_id", "status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_export_review_flag_org_status", table_name="export_review_flag")
    op.drop_table("export_review_flag")
    op.drop_index("ix_automation_notification_org_created", table_name="automation_notification")
    op.drop_table("automation_notification")
    op.drop_index("ix_automation_log_export_id", table_name="automation_log")
    op.drop_index("ix_automation_log_org_status", table_name="automation_log")
    op.drop_index("ix_automation_log_org_rule", table_name="automation_log")
    op.drop_index("ix_automation_log_org_created", table_name="automation_log")
    op.drop_table("automation_log")
    op.drop_index("ix_automation_rule_org_created", table_name="automation_rule")
    op.drop_index("ix_automation_rule_org_enabled", table_name="automation_rule")
    op.drop_table("automation_rule")
