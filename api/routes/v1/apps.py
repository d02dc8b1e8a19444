"""
api/routes/v1/apps.py -- Catalog tiles, the app store, and the caller's own apps.

Routes (in registration order to avoid FastAPI path capture conflicts):
  GET    /store                        -- in-store tiles with the caller's status
  POST   /store/sync                   -- publish every active tile to the store
  GET    /store/sync/status            -- catalog vs. store counts
  POST   /store/{tile_id}/request      -- request (or self-assign) an in-store tile
  GET    /me/apps                      -- tiles assigned to the caller
  POST   /me/apps/{tile_id}/launch     -- launch details, PIN-checked when required
  GET    /admin/apps                   -- all tiles
  POST   /admin/apps                   -- create tile
  PUT    /admin/apps/{tile_id}         -- update tile
  DELETE /admin/apps/{tile_id}         -- delete tile and its assignments

Security:
  Launch is rate-limited per IP; PIN checks use bcrypt (auth.tokens).
  Every PIN attempt is audited (app.launch / app.pin_failed). Too many
  failures for one (user, app) inside the lockout window return 429.
  Stored credentials are only decrypted on a successful launch.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    AppRequestResponse,
    LaunchBody,
    LaunchResponse,
    MessageResponse,
    StoreRequestCreate,
    StoreRequestResponse,
    StoreSyncResponse,
    StoreSyncStatusResponse,
    StoreTileResponse,
    TileCreate,
    TileResponse,
    TileUpdate,
)
from auth.dependencies import get_current_user, require_permission
from auth.models import User
from auth.tokens import verify_password
from core.config import get_settings
from core.crypto import decrypt_secret
from core.exceptions import Conflict, Forbidden, NotFound, PinLocked, ValidationError
from portal.lifecycle import RequestLifecycle
from portal.models import ApplicationTile, AuditEntry
from portal.store import PortalStore
from portal.sync import CatalogSyncService

router = APIRouter()

# An explicit null for these is ignored rather than written.
_NOT_NULL_TILE_FIELDS = {"name", "category", "status", "is_available_in_store", "requires_approval", "tags"}


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _require_tile(store: PortalStore, tile_id: str) -> ApplicationTile:
    tile = store.get_tile(tile_id)
    if tile is None:
        raise NotFound("App", tile_id)
    return tile


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@router.get("/store", response_model=list[StoreTileResponse])
def list_store(
    request: Request,
    current_user: User = Depends(require_permission("requests.view_own")),
) -> list[StoreTileResponse]:
    """Return in-store tiles, each tagged assigned / requested / available for the caller."""
    store: PortalStore = request.app.state.portal
    assigned = store.assigned_tile_ids(current_user.id)
    requested = store.open_request_app_ids(current_user.id)
    rows = []
    for tile in store.list_tiles(store_only=True):
        if tile.id in assigned:
            user_status = "assigned"
        elif tile.id in requested:
            user_status = "requested"
        else:
            user_status = "available"
        rows.append(
            StoreTileResponse(
                id=tile.id,
                name=tile.name,
                short_description=tile.short_description,
                category=tile.category,
                icon_url=tile.icon_url,
                publisher=tile.publisher,
                requires_approval=tile.requires_approval,
                user_status=user_status,
            )
        )
    return rows


@router.post("/store/sync", response_model=StoreSyncResponse)
def sync_store(
    request: Request,
    current_user: User = Depends(require_permission("apps.manage")),
) -> StoreSyncResponse:
    """Publish every active catalog tile to the store."""
    sync: CatalogSyncService = request.app.state.sync
    counts = sync.publish_store(current_user.id, ip_address=_client_ip(request))
    return StoreSyncResponse(message="Store synced with catalog", **counts)


@router.get("/store/sync/status", response_model=StoreSyncStatusResponse)
def store_sync_status(
    request: Request,
    current_user: User = Depends(require_permission("apps.view")),
) -> StoreSyncStatusResponse:
    store: PortalStore = request.app.state.portal
    return StoreSyncStatusResponse(**store.tile_counts())


@router.post("/store/{tile_id}/request", response_model=StoreRequestResponse, status_code=201)
def request_store_app(
    request: Request,
    tile_id: str,
    body: StoreRequestCreate,
    current_user: User = Depends(require_permission("requests.create")),
) -> StoreRequestResponse:
    """Ask for access to an in-store tile. Tiles that skip approval are assigned immediately."""
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    outcome = lifecycle.submit_for_tile(
        user_id=current_user.id,
        tile_id=tile_id,
        reason=body.reason,
        metadata=body.to_metadata(),
        ip_address=_client_ip(request),
    )
    if outcome.auto_assigned:
        return StoreRequestResponse(message="App has been added to your dashboard", auto_approved=True)
    return StoreRequestResponse(
        message="Request submitted successfully",
        auto_approved=False,
        request=AppRequestResponse.from_domain(outcome.request),
    )


# ---------------------------------------------------------------------------
# My apps
# ---------------------------------------------------------------------------


@router.get("/me/apps", response_model=list[TileResponse])
def my_apps(request: Request, current_user: User = Depends(get_current_user)) -> list[TileResponse]:
    """Return the active tiles assigned to the caller."""
    store: PortalStore = request.app.state.portal
    assignments = store.list_assignments(current_user.id)
    return [TileResponse.from_domain(tile) for _, tile in assignments if tile.status == "active"]


@limiter.limit("20/minute")  # PIN brute-force mitigation -- must be ABOVE @router
@router.post("/me/apps/{tile_id}/launch", response_model=LaunchResponse)
def launch_app(
    request: Request,
    tile_id: str,
    body: Optional[LaunchBody] = None,
    current_user: User = Depends(get_current_user),
) -> LaunchResponse:
    """Return launch details for an assigned app, verifying the PIN when one is required."""
    store: PortalStore = request.app.state.portal
    assignment = store.get_assignment(current_user.id, tile_id)
    if assignment is None:
        raise NotFound("Assignment", tile_id)
    tile = _require_tile(store, tile_id)
    ip_address = _client_ip(request)

    if assignment.requires_pin:
        pin = body.pin if body else None
        if not pin:
            raise ValidationError("A PIN is required to launch this app.")

        settings = get_settings()
        window_start = datetime.now(timezone.utc) - timedelta(minutes=settings.pin_lockout_minutes)
        failures = store.count_audit(
            "app.pin_failed",
            actor_id=current_user.id,
            target_id=tile_id,
            since=window_start.isoformat(timespec="microseconds"),
        )
        if failures >= settings.pin_max_failures:
            store.write_audit(
                AuditEntry(
                    actor_id=current_user.id,
                    action="app.pin_locked",
                    target_id=tile_id,
                    details={"failures": failures},
                    ip_address=ip_address,
                )
            )
            raise PinLocked(
                f"Too many failed attempts. Try again in {settings.pin_lockout_minutes} minutes.",
                locked_minutes=settings.pin_lockout_minutes,
            )

        if not assignment.pin_hash or not verify_password(pin, assignment.pin_hash):
            store.write_audit(
                AuditEntry(
                    actor_id=current_user.id,
                    action="app.pin_failed",
                    target_id=tile_id,
                    ip_address=ip_address,
                )
            )
            raise Forbidden("Incorrect PIN.", remaining_attempts=max(settings.pin_max_failures - failures - 1, 0))

    store.write_audit(
        AuditEntry(
            actor_id=current_user.id,
            action="app.launch",
            target_id=tile_id,
            details={"pin_verified": assignment.requires_pin},
            ip_address=ip_address,
        )
    )
    credentials = None
    if assignment.encrypted_credentials:
        credentials = json.loads(decrypt_secret(assignment.encrypted_credentials))
    return LaunchResponse(launch_url=tile.launch_url, app_username=assignment.app_username, credentials=credentials)


# ---------------------------------------------------------------------------
# Tile administration
# ---------------------------------------------------------------------------


@router.get("/admin/apps", response_model=list[TileResponse])
def list_tiles(
    request: Request,
    current_user: User = Depends(require_permission("apps.view")),
) -> list[TileResponse]:
    store: PortalStore = request.app.state.portal
    return [TileResponse.from_domain(t) for t in store.list_tiles()]


@router.post("/admin/apps", response_model=TileResponse, status_code=201)
def create_tile(
    request: Request,
    body: TileCreate,
    current_user: User = Depends(require_permission("apps.manage")),
) -> TileResponse:
    store: PortalStore = request.app.state.portal
    tile = ApplicationTile(**body.model_dump(mode="json"), created_by=current_user.id)
    try:
        with store.transaction() as conn:
            tile_id = store.create_tile(tile, conn=conn)
            store.write_audit(
                AuditEntry(
                    actor_id=current_user.id,
                    action="app.create",
                    target_id=tile_id,
                    details={"name": tile.name},
                    ip_address=_client_ip(request),
                ),
                conn=conn,
            )
    except IntegrityError as exc:
        raise Conflict("An app with that identifier already exists.") from exc
    return TileResponse.from_domain(store.get_tile(tile_id))


@router.put("/admin/apps/{tile_id}", response_model=TileResponse)
def update_tile(
    request: Request,
    tile_id: str,
    body: TileUpdate,
    current_user: User = Depends(require_permission("apps.manage")),
) -> TileResponse:
    store: PortalStore = request.app.state.portal
    _require_tile(store, tile_id)
    updates = {
        k: v
        for k, v in body.model_dump(mode="json", exclude_unset=True).items()
        if v is not None or k not in _NOT_NULL_TILE_FIELDS
    }
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    try:
        with store.transaction() as conn:
            store.update_tile(tile_id, conn=conn, **updates)
            store.write_audit(
                AuditEntry(
                    actor_id=current_user.id,
                    action="app.update",
                    target_id=tile_id,
                    details={"fields": sorted(updates)},
                    ip_address=_client_ip(request),
                ),
                conn=conn,
            )
    except IntegrityError as exc:
        raise Conflict("An app with that identifier already exists.") from exc
    return TileResponse.from_domain(store.get_tile(tile_id))


@router.delete("/admin/apps/{tile_id}", response_model=MessageResponse)
def delete_tile(
    request: Request,
    tile_id: str,
    current_user: User = Depends(require_permission("apps.manage")),
) -> MessageResponse:
    store: PortalStore = request.app.state.portal
    tile = _require_tile(store, tile_id)
    store.delete_tile(tile_id)
    store.write_audit(
        AuditEntry(
            actor_id=current_user.id,
            action="app.delete",
            target_id=tile_id,
            details={"name": tile.name},
            ip_address=_client_ip(request),
        )
    )
    return MessageResponse(message="App deleted")
