from __future__ import annotations

import uuid
from dataclasses import dataclass, field

BYPASS_ROLES = frozenset({"admin", "manager"})


def coerce_user_uuid(value: str) -> uuid.UUID:
    """Map an identity-provider subject to the UUID stored in owner columns."""
    try:
        return uuid.UUID(value)
    except ValueError:
        return uuid.uuid5(uuid.NAMESPACE_URL, f"crm-rocket-actor:{value}")


@dataclass(slots=True)
class AuthContext:
    """Row-scope context: who is asking and whether owner scoping applies."""

    user_id: str
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)

    @property
    def owner_key(self) -> uuid.UUID:
        return coerce_user_uuid(self.user_id)

    @property
    def sees_all_rows(self) -> bool:
        return self.is_super_admin or any(role.lower() in BYPASS_ROLES for role in self.roles)
