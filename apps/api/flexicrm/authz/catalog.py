"""Static permission catalog and the per-role default grants."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session


@dataclass(frozen=True)
class PermissionSpec:
    id: str
    category: str
    name: str
    description: str


PERMISSION_CATEGORIES = ("schema", "data", "admin", "feature")

PERMISSIONS: tuple[PermissionSpec, ...] = (
    PermissionSpec("schema.fields.read", "schema", "View fields", "See the field definitions of the customer schema"),
    PermissionSpec("schema.fields.create", "schema", "Create fields", "Add new fields and select options"),
    PermissionSpec("schema.fields.update", "schema", "Edit fields", "Rename, retype, reorder and lay out fields"),
    PermissionSpec("schema.fields.delete", "schema", "Delete fields", "Remove non-system fields and options"),
    PermissionSpec("schema.automation.read", "schema", "View automation", "See field dependency rules"),
    PermissionSpec("schema.automation.manage", "schema", "Manage automation", "Create, edit and delete dependency rules"),
    PermissionSpec("data.customers.read.all", "data", "View all customers", "Read every customer in the organization"),
    PermissionSpec("data.customers.read.team", "data", "View team customers", "Read customers owned by the caller's team"),
    PermissionSpec("data.customers.read.own", "data", "View own customers", "Read customers created by or assigned to the caller"),
    PermissionSpec("data.customers.create", "data", "Create customers", "Add customer records"),
    PermissionSpec("data.customers.update.all", "data", "Edit all customers", "Edit every customer in the organization"),
    PermissionSpec("data.customers.update.team", "data", "Edit team customers", "Edit customers owned by the caller's team"),
    PermissionSpec("data.customers.update.own", "data", "Edit own customers", "Edit customers created by or assigned to the caller"),
    PermissionSpec("data.customers.delete", "data", "Delete customers", "Soft-delete customer records"),
    PermissionSpec("data.customers.export", "data", "Export customers", "Download customer records as CSV"),
    PermissionSpec("admin.users.read", "admin", "View members", "See the member directory"),
    PermissionSpec("admin.users.manage", "admin", "Manage members", "Create, edit, deactivate and reactivate members"),
    PermissionSpec("admin.teams.manage", "admin", "Manage teams", "Create, edit and delete teams"),
    PermissionSpec("admin.permissions.manage", "admin", "Manage permissions", "Grant or deny permissions per member"),
    PermissionSpec("admin.audit.read", "admin", "View audit log", "Read the organization's audit trail"),
    PermissionSpec("admin.settings.manage", "admin", "Manage settings", "Manage landing pages and system settings"),
    PermissionSpec("feature.reports.view", "feature", "View reports", "Open the reporting dashboards"),
    PermissionSpec("feature.reports.create", "feature", "Create reports", "Build and save reports"),
    PermissionSpec("feature.api.access", "feature", "API access", "Use the API with personal tokens"),
)

PERMISSION_IDS = frozenset(entry.id for entry in PERMISSIONS)

DEFAULT_ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "ceo": PERMISSION_IDS,
    "team_lead": frozenset(
        {
            "schema.fields.read",
            "schema.automation.read",
            "data.customers.read.all",
            "data.customers.read.team",
            "data.customers.read.own",
            "data.customers.create",
            "data.customers.update.team",
            "data.customers.update.own",
            "data.customers.export",
            "admin.users.read",
            "admin.audit.read",
            "feature.reports.view",
        }
    ),
    "staff": frozenset(
        {
            "schema.fields.read",
            "data.customers.read.own",
            "data.customers.create",
            "data.customers.update.own",
            "feature.reports.view",
        }
    ),
}


def seed_permission_catalog(session: Session) -> None:
    """Insert catalog entries and role defaults that are missing. Safe to run repeatedly."""

    from flexicrm.authz.models import Permission, RolePermission

    existing_permissions = set(session.scalars(select(Permission.id)).all())
    for entry in PERMISSIONS:
        if entry.id not in existing_permissions:
            session.add(Permission(id=entry.id, category=entry.category, name=entry.name, description=entry.description))
    session.flush()

    existing_grants = {(row.role, row.permission_id) for row in session.scalars(select(RolePermission)).all()}
    for role, permission_ids in DEFAULT_ROLE_PERMISSIONS.items():
        for permission_id in sorted(permission_ids):
            if (role, permission_id) not in existing_grants:
                session.add(RolePermission(role=role, permission_id=permission_id))
    session.flush()
