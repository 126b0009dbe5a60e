from __future__ import annotations

from dataclasses import dataclass

from flexicrm.authz.catalog import DEFAULT_ROLE_PERMISSIONS, PERMISSION_IDS, PERMISSIONS
from flexicrm.authz.service import compute_effective_permissions, has_permission


@dataclass
class Override:
    permission_id: str
    granted: bool


def test_catalog_has_unique_ids_in_known_categories() -> None:
    ids = [entry.id for entry in PERMISSIONS]
    assert len(ids) == len(set(ids)) == 24
    assert {entry.category for entry in PERMISSIONS} == {"schema", "data", "admin", "feature"}
    assert all(entry.id.startswith(f"{entry.category}.") for entry in PERMISSIONS)


def test_role_defaults() -> None:
    assert DEFAULT_ROLE_PERMISSIONS["ceo"] == PERMISSION_IDS
    assert "data.customers.read.all" in DEFAULT_ROLE_PERMISSIONS["team_lead"]
    assert "data.customers.update.all" not in DEFAULT_ROLE_PERMISSIONS["team_lead"]
    assert DEFAULT_ROLE_PERMISSIONS["staff"] == frozenset(
        {
            "schema.fields.read",
            "data.customers.read.own",
            "data.customers.create",
            "data.customers.update.own",
            "feature.reports.view",
        }
    )


def test_grant_and_deny_overrides_adjust_role_defaults() -> None:
    effective = compute_effective_permissions(
        "staff",
        [Override("data.customers.export", True), Override("feature.reports.view", False)],
    )

    assert has_permission(effective, "data.customers.export")
    assert not has_permission(effective, "feature.reports.view")
    assert has_permission(effective, "data.customers.create")


def test_last_override_for_a_permission_wins() -> None:
    effective = compute_effective_permissions(
        "staff",
        [Override("data.customers.delete", True), Override("data.customers.delete", False)],
    )
    assert "data.customers.delete" not in effective

    effective = compute_effective_permissions(
        "staff",
        [Override("data.customers.delete", False), Override("data.customers.delete", True)],
    )
    assert "data.customers.delete" in effective


def test_resolution_is_idempotent_and_unknown_roles_start_empty() -> None:
    overrides = [Override("admin.audit.read", True)]
    assert compute_effective_permissions("team_lead", overrides) == compute_effective_permissions("team_lead", overrides)
    assert compute_effective_permissions("guest", overrides) == {"admin.audit.read"}


def test_explicit_role_table_replaces_builtin_defaults() -> None:
    effective = compute_effective_permissions("staff", [], {"staff": frozenset({"schema.fields.read"})})
    assert effective == {"schema.fields.read"}
