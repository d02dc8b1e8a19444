"""
api/routes/v1/catalog_sync.py -- Catalog sync control routes.

Routes:
  POST /catalog/sync           -- start a sync run in the background
  GET  /catalog/sync/status    -- sync settings + most recent run
  GET  /catalog/sync/logs      -- run history, newest first
  PUT  /catalog/sync/settings  -- enable/disable sync, set frequency

POST /catalog/sync returns as soon as the 'running' log row exists. The
outcome of the run is only visible through /catalog/sync/logs.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.limiter import limiter
from api.models import (
    SyncLogResponse,
    SyncSettingsResponse,
    SyncSettingsUpdate,
    SyncStatusResponse,
    SyncTriggerBody,
    SyncTriggerResponse,
)
from auth.dependencies import require_permission
from auth.models import User
from portal.settings import SettingsGate
from portal.sync import CatalogSyncService

# Every route here requires catalog.sync.
router = APIRouter(dependencies=[Depends(require_permission("catalog.sync"))])


# ---------------------------------------------------------------------------
# POST /catalog/sync -- start a sync run
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/catalog/sync", response_model=SyncTriggerResponse)
def trigger_sync(
    request: Request,
    body: Optional[SyncTriggerBody] = None,
    current_user: User = Depends(require_permission("catalog.sync")),
) -> SyncTriggerResponse:
    """Start an on-demand sync. Pass ``sync_id`` to make retries idempotent."""
    sync: CatalogSyncService = request.app.state.sync
    sync_id = sync.trigger(
        actor_id=current_user.id,
        sync_id=body.sync_id if body else None,
        ip_address=request.client.host if request.client else None,
    )
    return SyncTriggerResponse(message="Catalog sync started", sync_id=sync_id, status="running")


# ---------------------------------------------------------------------------
# GET /catalog/sync/status -- settings and the latest run
# ---------------------------------------------------------------------------


@router.get("/catalog/sync/status", response_model=SyncStatusResponse)
def sync_status(request: Request) -> SyncStatusResponse:
    sync: CatalogSyncService = request.app.state.sync
    status = sync.status()
    last = status["last_sync"]
    return SyncStatusResponse(
        settings=SyncSettingsResponse(**status["settings"]),
        last_sync=SyncLogResponse.from_domain(last) if last else None,
    )


# ---------------------------------------------------------------------------
# GET /catalog/sync/logs -- run history
# ---------------------------------------------------------------------------


@router.get("/catalog/sync/logs", response_model=list[SyncLogResponse])
def sync_logs(
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[SyncLogResponse]:
    sync: CatalogSyncService = request.app.state.sync
    return [SyncLogResponse.from_domain(log) for log in sync.logs(limit=limit, offset=offset)]


# ---------------------------------------------------------------------------
# PUT /catalog/sync/settings -- change sync settings
# ---------------------------------------------------------------------------


@router.put("/catalog/sync/settings", response_model=SyncSettingsResponse)
def update_sync_settings(
    request: Request,
    body: SyncSettingsUpdate,
    current_user: User = Depends(require_permission("catalog.sync")),
) -> SyncSettingsResponse:
    gate: SettingsGate = request.app.state.settings_gate
    config = gate.update_sync_settings(
        updated_by=current_user.id,
        enabled=body.sync_enabled,
        frequency_hours=body.frequency_hours,
    )
    return SyncSettingsResponse(
        enabled=config.enabled,
        frequency_hours=config.frequency_hours,
        last_run=config.last_run,
    )
