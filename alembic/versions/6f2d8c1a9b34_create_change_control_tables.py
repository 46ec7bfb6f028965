"""create_change_control_tables

Revision ID: 6f2d8c1a9b34
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "6f2d8c1a9b34"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "change_records",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("merchant_id", sa.Text(), nullable=False),
        sa.Column("action_type", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.Text(), nullable=True),
        sa.Column("entity_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("decision_reason", sa.Text(), nullable=True),
        sa.Column("rule_id", sa.Text(), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("estimated_impact", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("actual_impact", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("executed_by", sa.Text(), nullable=False, server_default="agent"),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("published_to_shopify", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("counted_toward_daily_cap", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reverts_id", sa.UUID(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["reverts_id"], ["change_records.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_change_records_merchant_status", "change_records", ["merchant_id", "status"])
    op.create_index("ix_change_records_entity_id", "change_records", ["entity_id"])
    op.create_index("ix_change_records_created_at", "change_records", ["created_at"])

    op.create_table(
        "automation_settings",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("merchant_id", sa.Text(), nullable=False),
        sa.Column("global_autopilot_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("autopilot_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("autopilot_mode", sa.Text(), nullable=False, server_default="safe"),
        sa.Column("dry_run_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_publish_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("max_daily_actions", sa.Integer(), nullable=False, server_default="10"),
        sa.Column(
            "enabled_action_types",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[\"optimize_seo\"]'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("merchant_id"),
    )

    op.create_table(
        "autopilot_quotas",
        sa.Column("merchant_id", sa.Text(), nullable=False),
        sa.Column("window_started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("merchant_id"),
    )


def downgrade() -> None:
    op.drop_table("autopilot_quotas")
    op.drop_table("automation_settings")
    op.drop_index("ix_change_records_created_at", table_name="change_records")
    op.drop_index("ix_change_records_entity_id", table_name="change_records")
    op.drop_index("ix_change_records_merchant_status", table_name="change_records")
    op.drop_table("change_records")
