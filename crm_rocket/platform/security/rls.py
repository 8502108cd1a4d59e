from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import or_
from sqlalchemy.sql import Select

from crm_rocket import audit
from crm_rocket.metrics import observe_rls_denied_read, observe_rls_denied_write
from crm_rocket.platform.security.context import AuthContext
from crm_rocket.platform.security.errors import RowScopeError


def is_admin_bypass(ctx: AuthContext) -> bool:
    return ctx.sees_all_rows


def apply_rls_filter(
    query: Select[Any],
    resource: str,
    ctx: AuthContext,
    owner_columns: tuple[str, ...],
) -> Select[Any]:
    """Restrict a select to rows where any owner column equals the current user.

    Models in the select that expose none of `owner_columns` are left alone, so
    public tables (companies) pass through unchanged.
    """

    if is_admin_bypass(ctx) or not owner_columns:
        return query

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        clauses = [getattr(model, column) == ctx.owner_key for column in owner_columns if hasattr(model, column)]
        if clauses:
            query = query.where(or_(*clauses))

    return query


def row_visible(record: dict[str, Any], ctx: AuthContext, owner_columns: tuple[str, ...]) -> bool:
    if is_admin_bypass(ctx) or not owner_columns:
        return True
    return any(_same_user(record.get(column), ctx.owner_key) for column in owner_columns)


def validate_rls_read(
    resource: str,
    record: dict[str, Any],
    ctx: AuthContext,
    owner_columns: tuple[str, ...],
) -> bool:
    visible = row_visible(record, ctx, owner_columns)
    if not visible:
        observe_rls_denied_read(resource=resource)
    return visible


def validate_rls_write(
    resource: str,
    payload: dict[str, Any],
    ctx: AuthContext,
    owner_columns: tuple[str, ...],
    *,
    action: str = "write",
    existing: dict[str, Any] | None = None,
) -> None:
    """Reject writes whose resulting row would not be visible to the writer."""

    if is_admin_bypass(ctx) or not owner_columns:
        return

    merged = dict(existing or {})
    merged.update({key: value for key, value in payload.items() if key in owner_columns})
    if row_visible(merged, ctx, owner_columns):
        return

    observe_rls_denied_write(resource=resource)
    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.rls",
        entity_id=resource,
        action="rls.denied",
        before=None,
        after={
            "resource": resource,
            "action": action,
            "owner_columns": list(owner_columns),
            "user_id": ctx.user_id,
        },
        correlation_id=ctx.correlation_id,
    )
    raise RowScopeError(resource, owner_columns)


def _same_user(value: Any, owner_key: uuid.UUID) -> bool:
    return value is not None and str(value) == str(owner_key)
