"""
api/routes/v1/assignments.py -- Admin management of user -> app grants, and the audit log.

Routes:
  GET    /admin/assignments/users/{user_id}                 -- a user's assignments
  POST   /admin/assignments/users/{user_id}                 -- assign a tile
  DELETE /admin/assignments/users/{user_id}/apps/{tile_id}  -- revoke a tile
  GET    /admin/audit-logs                                  -- audit trail, newest first

Secrets:
  pin          -- 4 digits, stored as a bcrypt hash (auth.tokens.hash_password)
  credentials  -- JSON object, stored Fernet-encrypted (core.crypto)
  Neither is ever returned by these routes.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import AssignmentCreate, AssignmentResponse, AuditEntryResponse, MessageResponse
from auth.dependencies import require_permission
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.crypto import encrypt_secret
from core.exceptions import AlreadyAssigned, NotFound, ValidationError
from portal.models import AuditEntry, UserAppAssignment
from portal.store import PortalStore

router = APIRouter()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _require_user(request: Request, user_id: int) -> User:
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(user_id)
    if user is None:
        raise NotFound("User", user_id)
    return user


@router.get("/admin/assignments/users/{user_id}", response_model=list[AssignmentResponse])
def list_user_assignments(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission("apps.view")),
) -> list[AssignmentResponse]:
    _require_user(request, user_id)
    store: PortalStore = request.app.state.portal
    return [AssignmentResponse.from_domain(a, tile) for a, tile in store.list_assignments(user_id)]


@router.post("/admin/assignments/users/{user_id}", response_model=AssignmentResponse, status_code=201)
def assign_app(
    request: Request,
    user_id: int,
    body: AssignmentCreate,
    current_user: User = Depends(require_permission("apps.assign")),
) -> AssignmentResponse:
    """Grant a tile to a user, optionally with a launch PIN and stored credentials."""
    _require_user(request, user_id)
    store: PortalStore = request.app.state.portal
    tile = store.get_tile(body.app_tile_id)
    if tile is None:
        raise NotFound("App", body.app_tile_id)

    requires_pin = body.requires_pin or body.pin is not None
    if requires_pin and body.pin is None:
        raise ValidationError("A 4-digit PIN is required when requires_pin is set.")

    assignment = UserAppAssignment(
        user_id=user_id,
        app_tile_id=tile.id,
        app_username=body.app_username,
        pin_hash=hash_password(body.pin) if body.pin else None,
        requires_pin=requires_pin,
        encrypted_credentials=encrypt_secret(json.dumps(body.credentials)) if body.credentials else None,
        assigned_by=current_user.id,
    )
    try:
        with store.transaction() as conn:
            store.insert_assignment(conn, assignment)
            store.write_audit(
                AuditEntry(
                    actor_id=current_user.id,
                    action="apps.assign",
                    target_id=tile.id,
                    details={"user_id": user_id, "requires_pin": requires_pin},
                    ip_address=_client_ip(request),
                ),
                conn=conn,
            )
    except IntegrityError as exc:
        raise AlreadyAssigned("App already assigned to user.", app_id=tile.id) from exc

    created = store.get_assignment(user_id, tile.id)
    return AssignmentResponse.from_domain(created, tile)


@router.delete("/admin/assignments/users/{user_id}/apps/{tile_id}", response_model=MessageResponse)
def unassign_app(
    request: Request,
    user_id: int,
    tile_id: str,
    current_user: User = Depends(require_permission("apps.assign")),
) -> MessageResponse:
    store: PortalStore = request.app.state.portal
    with store.transaction() as conn:
        if not store.delete_assignment(conn, user_id, tile_id):
            raise NotFound("Assignment", tile_id)
        store.write_audit(
            AuditEntry(
                actor_id=current_user.id,
                action="apps.unassign",
                target_id=tile_id,
                details={"user_id": user_id},
                ip_address=_client_ip(request),
            ),
            conn=conn,
        )
    return MessageResponse(message="App unassigned")


@router.get("/admin/audit-logs", response_model=list[AuditEntryResponse])
def list_audit_logs(
    request: Request,
    action: Optional[str] = None,
    target_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(require_permission("system.audit")),
) -> list[AuditEntryResponse]:
    store: PortalStore = request.app.state.portal
    entries = store.list_audit(action=action, target_id=target_id, limit=limit, offset=offset)
    return [AuditEntryResponse.from_domain(e) for e in entries]
