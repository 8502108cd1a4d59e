from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for row-scope enforcement failures."""


class RowScopeError(AuthorizationError):
    """Raised when a write would leave a row invisible to the writer."""

    def __init__(self, resource: str, owner_columns: tuple[str, ...]) -> None:
        self.resource = resource
        self.owner_columns = owner_columns
        super().__init__(
            f"Row for resource '{resource}' must keep the current user in one of: {', '.join(owner_columns)}"
        )
