"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in portal/models.py -- dataclasses own domain shape; stores and routes do the
work.

Layer rule: no imports from api/, core/, or portal/.
"""

from __future__ import annotations

from dataclasses import dataclass

ROLES = ("super_admin", "admin", "user")


@dataclass
class User:
    """An authenticated identity (the portal's "principal").

    Only ``id`` and ``role`` matter to the request lifecycle; the rest is
    account management.
    """

    username: str
    role: str  # "super_admin", "admin", "user"
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    is_active: bool = True
    last_login: str | None = None
