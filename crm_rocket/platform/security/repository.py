from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from crm_rocket.platform.security.context import AuthContext
from crm_rocket.platform.security.rls import apply_rls_filter, validate_rls_read, validate_rls_write


class BaseRepository:
    resource = ""
    owner_columns: tuple[str, ...] = ()

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_rls_filter(query, self.resource, ctx, self.owner_columns)

    def can_read(self, record: dict[str, Any], ctx: AuthContext) -> bool:
        return validate_rls_read(self.resource, record, ctx, self.owner_columns)

    def validate_write_security(
        self,
        payload: dict[str, Any],
        ctx: AuthContext,
        *,
        existing: dict[str, Any] | None = None,
        action: str = "write",
    ) -> None:
        validate_rls_write(self.resource, payload, ctx, self.owner_columns, existing=existing, action=action)
