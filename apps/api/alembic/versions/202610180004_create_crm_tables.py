"""create field definitions, customers and automation rules

Revision ID: 202610180004
Revises: 202610180003
Create Date: 2026-10-18 09:30:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180004"
down_revision: str | None = "202610180003"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_field_definition",
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("field_type", sa.String(length=16), nullable=False, server_default="text"),
        sa.Column("is_visible", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("column_width", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("layout", sa.JSON(), nullable=True),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["org_organization.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("organization_id", "id"),
    )
    op.create_index("ix_crm_field_definition_org_order", "crm_field_definition", ["organization_id", "sort_order"])

    op.create_table(
        "crm_customer",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("assigned_to", sa.Uuid(), nullable=True),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("source_landing_page_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["organization_id"], ["org_organization.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["team_id"], ["org_team.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["source_landing_page_id"], ["landing_page.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_customer_org_deleted_created",
        "crm_customer",
        ["organization_id", "deleted_at", "created_at"],
    )
    op.create_index("ix_crm_customer_assigned_to", "crm_customer", ["assigned_to"])
    op.create_index("ix_crm_customer_team", "crm_customer", ["team_id"])

    op.create_table(
        "crm_automation_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("trigger_field_id", sa.String(length=64), nullable=False),
        sa.Column("trigger_value", sa.JSON(), nullable=True),
        sa.Column("target_field_id", sa.String(length=64), nullable=False),
        sa.Column("target_value", sa.JSON(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["org_organization.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_automation_rule_org_active_order",
        "crm_automation_rule",
        ["organization_id", "is_active", "sort_order"],
    )


def downgrade() -> None:
    op.drop_index("ix_crm_automation_rule_org_active_order", table_name="crm_automation_rule")
    op.drop_table("crm_automation_rule")
    op.drop_index("ix_crm_customer_team", table_name="crm_customer")
    op.drop_index("ix_crm_customer_assigned_to", table_name="crm_customer")
    op.drop_index("ix_crm_customer_org_deleted_created", table_name="crm_customer")
    op.drop_table("crm_customer")
    op.drop_index("ix_crm_field_definition_org_order", table_name="crm_field_definition")
    op.drop_table("crm_field_definition")
