from collections.abc import Iterable

CRM_READ_PERMISSIONS = {
    "crm.contacts.read",
    "crm.companies.read",
    "crm.deals.read",
    "crm.activities.read",
    "crm.documents.read",
    "crm.tasks.read",
    "crm.analytics.read",
}

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "admin": {"*"},
    "manager": {"crm.*", "email.*", "users.read"},
    "sales_rep": {"crm.*", "email.*"},
    "user": CRM_READ_PERMISSIONS | {"crm.activities.write", "crm.tasks.write"},
}

ROLE_LABELS = {
    "admin": "Administrator",
    "manager": "Sales Manager",
    "sales_rep": "Sales Representative",
    "user": "User",
}


def permissions_for_roles(roles: Iterable[str]) -> set[str]:
    granted: set[str] = set()
    for role in roles:
        granted |= ROLE_PERMISSIONS.get(role.lower(), set())
        # raw permission strings in the token are honoured as-is
        if "." in role:
            granted.add(role)
    return granted


def has_permission(granted: Iterable[str], permission: str) -> bool:
    for pattern in granted:
        if pattern == "*" or pattern == permission:
            return True
        if pattern.endswith(".*") and permission.startswith(pattern[:-1]):
            return True
    return False
