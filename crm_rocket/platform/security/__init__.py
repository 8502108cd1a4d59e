from crm_rocket.platform.security.context import AuthContext, coerce_user_uuid
from crm_rocket.platform.security.errors import AuthorizationError, RowScopeError
from crm_rocket.platform.security.repository import BaseRepository
from crm_rocket.platform.security.rls import apply_rls_filter, is_admin_bypass, row_visible, validate_rls_write

__all__ = [
    "AuthContext",
    "coerce_user_uuid",
    "AuthorizationError",
    "RowScopeError",
    "BaseRepository",
    "apply_rls_filter",
    "is_admin_bypass",
    "row_visible",
    "validate_rls_write",
]
