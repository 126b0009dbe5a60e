from flexicrm.platform.security.context import AuthContext
from flexicrm.platform.security.errors import AuthorizationError, ScopeViolationError
from flexicrm.platform.security.repository import BaseRepository
from flexicrm.platform.security.rls import apply_rls_filter, validate_rls_read_scope, validate_rls_write

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "ScopeViolationError",
    "BaseRepository",
    "apply_rls_filter",
    "validate_rls_read_scope",
    "validate_rls_write",
]
