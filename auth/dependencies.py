"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and permissions.

Authentication is an Authorization: Bearer <jwt> header. The token's user_id
is re-checked against the user store on every request so deactivated
accounts lose access immediately.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_permission(slug) wraps get_current_user() and raises HTTP 403 when
app.state.permissions denies the slug for the user's role.

Layer rule: no imports from core/ or portal/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import User
from auth.permissions import VIEW_ALL_REQUESTS_ROLES, PermissionChecker
from auth.tokens import decode_access_token


def try_get_current_user(request: Request) -> User | None:
    """Return the authenticated User, or None. Never raises."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    payload = decode_access_token(auth_header[7:])
    if not payload:
        return None
    user = request.app.state.user_store.get_by_id(payload["user_id"])
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_permission(slug: str) -> Callable[..., User]:
    """Build a dependency that requires ``slug``. Raises 401 / 403.

    Use as a FastAPI dependency:
        @router.post("/admin/requests/{id}/approve")
        def route(user: User = Depends(require_permission("app_requests.approve"))): ...
    """

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        checker: PermissionChecker = request.app.state.permissions
        if not checker.allows(user.role, slug):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission '{slug}' required."},
            )
        return user

    return dependency


def can_view_all_requests(user: User) -> bool:
    """True for roles that see every request (admin and super_admin)."""
    return user.role in VIEW_ALL_REQUESTS_ROLES
