"""
auth/permissions.py -- Role -> permission-slug lookup.

PermissionChecker answers one question: may a principal with this role use
this permission slug? super_admin bypasses every check. The default grant
table matches the seeded roles; deployments may construct a checker with a
different table and attach it to app.state.permissions.

Layer rule: no imports from api/, core/, or portal/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

SUPER_ADMIN = "super_admin"

_USER_GRANTS = frozenset(
    {
        "requests.create",
        "requests.view_own",
    }
)

_ADMIN_GRANTS = _USER_GRANTS | frozenset(
    {
        "app_requests.read",
        "app_requests.approve",
        "app_requests.deny",
        "catalog.sync",
        "apps.view",
        "apps.manage",
        "apps.assign",
        "users.view",
        "users.create",
        "system.audit",
    }
)

# Never granted to a role; only the super_admin bypass reaches these.
SUPER_ADMIN_ONLY = frozenset({"system.settings"})

DEFAULT_GRANTS: dict[str, frozenset[str]] = {
    "user": _USER_GRANTS,
    "admin": _ADMIN_GRANTS,
}

# Roles that see every request, not just their own.
VIEW_ALL_REQUESTS_ROLES = frozenset({SUPER_ADMIN, "admin"})


class PermissionChecker:
    def __init__(self, grants: Mapping[str, Iterable[str]] | None = None) -> None:
        source = DEFAULT_GRANTS if grants is None else grants
        self._grants = {role: frozenset(slugs) for role, slugs in source.items()}

    def allows(self, role: str, slug: str) -> bool:
        if role == SUPER_ADMIN:
            return True
        return slug in self._grants.get(role, frozenset())

    def slugs_for(self, role: str) -> list[str]:
        if role == SUPER_ADMIN:
            return sorted(set().union(SUPER_ADMIN_ONLY, *self._grants.values()))
        return sorted(self._grants.get(role, frozenset()))
