from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for organization scope enforcement failures."""


class ScopeViolationError(AuthorizationError):
    """Raised when a read or write reaches outside the caller's organization."""

    def __init__(self, resource: str, scope_type: str) -> None:
        self.resource = resource
        self.scope_type = scope_type
        super().__init__(f"Out-of-scope {scope_type} for resource '{resource}'")
