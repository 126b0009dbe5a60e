from flexicrm.authz.models import Permission, PermissionOverride, RolePermission

__all__ = [
    "Permission",
    "PermissionOverride",
    "RolePermission",
]
