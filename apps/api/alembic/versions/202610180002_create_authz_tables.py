"""create permission catalog, role defaults and overrides

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 09:10:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

from flexicrm.authz.catalog import DEFAULT_ROLE_PERMISSIONS, PERMISSIONS


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "authz_permission",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("category", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "authz_role_permission",
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("permission_id", sa.String(length=128), nullable=False),
        sa.ForeignKeyConstraint(["permission_id"], ["authz_permission.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("role", "permission_id"),
    )

    op.create_table(
        "authz_permission_override",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("permission_id", sa.String(length=128), nullable=False),
        sa.Column("granted", sa.Boolean(), nullable=False),
        sa.Column("granted_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["org_organization.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["org_user_profile.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["permission_id"], ["authz_permission.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "permission_id", name="uq_authz_permission_override_user_permission"),
    )
    op.create_index("ix_authz_permission_override_user", "authz_permission_override", ["user_id"])

    _seed_catalog()


def _seed_catalog() -> None:
    permission_table = sa.table(
        "authz_permission",
        sa.column("id", sa.String()),
        sa.column("category", sa.String()),
        sa.column("name", sa.String()),
        sa.column("description", sa.Text()),
    )
    op.bulk_insert(
        permission_table,
        [
            {"id": entry.id, "category": entry.category, "name": entry.name, "description": entry.description}
            for entry in PERMISSIONS
        ],
    )

    role_permission_table = sa.table(
        "authz_role_permission",
        sa.column("role", sa.String()),
        sa.column("permission_id", sa.String()),
    )
    op.bulk_insert(
        role_permission_table,
        [
            {"role": role, "permission_id": permission_id}
            for role, permission_ids in DEFAULT_ROLE_PERMISSIONS.items()
            for permission_id in sorted(permission_ids)
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_authz_permission_override_user", table_name="authz_permission_override")
    op.drop_table("authz_permission_override")
    op.drop_table("authz_role_permission")
    op.drop_table("authz_permission")
