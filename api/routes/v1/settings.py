"""
api/routes/v1/settings.py -- Raw system settings, super_admin only.

Routes:
  GET /admin/settings        -- every stored setting as {key: value}
  PUT /admin/settings/{key}  -- upsert one setting

system.settings is not granted to any seeded role, so only super_admin
passes the permission check. Keys the sync job reads are type-checked by
SettingsGate.put(); any other key accepts an arbitrary JSON value.
"""

from typing import Any

from fastapi import APIRouter, Depends, Request

from api.models import SettingResponse, SettingUpdate
from auth.dependencies import require_permission
from auth.models import User
from portal.models import AuditEntry
from portal.settings import SettingsGate
from portal.store import PortalStore

router = APIRouter()


# ---------------------------------------------------------------------------
# GET /admin/settings -- list every stored setting
# ---------------------------------------------------------------------------


@router.get("/admin/settings", response_model=dict[str, Any])
def list_settings(
    request: Request,
    current_user: User = Depends(require_permission("system.settings")),
) -> dict[str, Any]:
    gate: SettingsGate = request.app.state.settings_gate
    return gate.all()


# ---------------------------------------------------------------------------
# PUT /admin/settings/{key} -- create or replace one setting
# ---------------------------------------------------------------------------


@router.put("/admin/settings/{key}", response_model=SettingResponse)
def put_setting(
    request: Request,
    key: str,
    body: SettingUpdate,
    current_user: User = Depends(require_permission("system.settings")),
) -> SettingResponse:
    gate: SettingsGate = request.app.state.settings_gate
    store: PortalStore = request.app.state.portal
    with store.transaction() as conn:
        gate.put(key, body.value, updated_by=current_user.id, conn=conn)
        store.write_audit(
            AuditEntry(
                actor_id=current_user.id,
                action="settings.update",
                target_id=key,
                details={"value": body.value},
                ip_address=request.client.host if request.client else None,
            ),
            conn=conn,
        )
    return SettingResponse(key=key, value=gate.get(key))
