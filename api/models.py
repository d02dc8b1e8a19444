"""
API request and response models for AppPortal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in portal/models.py,
which own the internal domain representation. The from_domain() factories
keep the mapping colocated with the output model rather than scattered
across route handlers.

Separation of concerns: portal/ models = domain truth; api/ models = API contract.

Blank required strings (request reason, deny reason) are NOT rejected here:
the lifecycle engine validates them so the client receives a 400
validation_error with a specific message rather than a generic 422.
"""

from datetime import date
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from portal.models import (
    ApplicationTile,
    AppRequest,
    AuditEntry,
    CatalogSyncLog,
    RequestHistoryEntry,
    RequestStatus,
    UserAppAssignment,
)

PIN_PATTERN = r"^\d{4}$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    super_admin = "super_admin"
    admin = "admin"
    user = "user"


class TileStatusEnum(str, Enum):
    active = "active"
    inactive = "inactive"


class PriorityEnum(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


# ---------------------------------------------------------------------------
# Common
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    Extra keys carry structured context, e.g. request_id and status on a
    duplicate_open_request error.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int
    offset: int
    total: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    username: str
    role: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    role: str
    permissions: list[str]


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8, max_length=72)
    role: RoleEnum = RoleEnum.user


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    is_active: bool
    created_at: str
    last_login: Optional[str] = None


# ---------------------------------------------------------------------------
# App requests
# ---------------------------------------------------------------------------


class RequestMetadata(BaseModel):
    """Optional fields shared by both request-submission bodies."""

    model_config = ConfigDict(str_strip_whitespace=True)

    cost_center: Optional[str] = Field(default=None, max_length=100)
    priority: Optional[PriorityEnum] = None
    desired_by_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    def to_metadata(self) -> dict[str, Any]:
        return {
            "cost_center": self.cost_center,
            "priority": self.priority.value if self.priority else None,
            "desired_by_date": self.desired_by_date.isoformat() if self.desired_by_date else None,
            "notes": self.notes,
        }


class AppRequestCreate(RequestMetadata):
    """Request body for POST /api/v1/requests.

    ``business_justification`` is accepted as an alias of ``reason``.
    """

    app_identifier_or_name: str = Field(default="", max_length=255)
    reason: str = Field(
        default="",
        max_length=2000,
        validation_alias=AliasChoices("reason", "business_justification"),
    )


class StoreRequestCreate(RequestMetadata):
    """Request body for POST /api/v1/store/{tile_id}/request."""

    reason: str = Field(default="", max_length=2000)


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: RequestStatus
    changed_by: Optional[int]
    note: Optional[str]
    created_at: str

    @classmethod
    def from_domain(cls, entry: RequestHistoryEntry) -> "HistoryEntryResponse":
        return cls(status=entry.status, changed_by=entry.changed_by, note=entry.note, created_at=entry.created_at)


class AppRequestResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: int
    app_id: Optional[str]
    app_identifier_or_name: str
    app_exists_in_store: bool
    reason: str
    status: RequestStatus
    cost_center: Optional[str] = None
    priority: Optional[str] = None
    desired_by_date: Optional[str] = None
    notes: Optional[str] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[str] = None
    admin_note: Optional[str] = None
    deny_reason: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, req: AppRequest) -> "AppRequestResponse":
        return cls(
            id=req.id,
            user_id=req.user_id,
            app_id=req.app_id,
            app_identifier_or_name=req.app_identifier_or_name,
            app_exists_in_store=req.app_exists_in_store,
            reason=req.reason,
            status=req.status,
            cost_center=req.cost_center,
            priority=req.priority,
            desired_by_date=req.desired_by_date,
            notes=req.notes,
            reviewed_by=req.reviewed_by,
            reviewed_at=req.reviewed_at,
            admin_note=req.admin_note,
            deny_reason=req.deny_reason,
            created_at=req.created_at,
            updated_at=req.updated_at,
        )


class AppRequestDetailResponse(AppRequestResponse):
    history: list[HistoryEntryResponse]

    @classmethod
    def from_domain_with_history(
        cls,
        req: AppRequest,
        history: list[RequestHistoryEntry],
    ) -> "AppRequestDetailResponse":
        base = AppRequestResponse.from_domain(req).model_dump()
        return cls(**base, history=[HistoryEntryResponse.from_domain(h) for h in history])


class AdminRequestListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    requests: list[AppRequestResponse]
    counts: dict[str, int]
    pagination: Pagination


class ReviewBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    note: Optional[str] = Field(default=None, max_length=2000)


class DenyBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(default="", max_length=2000)


class ApproveResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    app_added: bool
    app_id: Optional[str]
    status: RequestStatus
    request: AppRequestResponse


class StoreRequestResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    auto_approved: bool
    request: Optional[AppRequestResponse] = None


# ---------------------------------------------------------------------------
# Catalog sync
# ---------------------------------------------------------------------------


class SyncTriggerBody(BaseModel):
    """Optional body for POST /api/v1/catalog/sync."""

    sync_id: Optional[str] = Field(default=None, min_length=1, max_length=64)


class SyncTriggerResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    sync_id: str
    status: str


class SyncLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sync_id: str
    start_time: str
    end_time: Optional[str]
    status: str
    sync_mode: str
    triggered_by: Optional[int]
    apps_added: int
    apps_updated: int
    apps_marked_unavailable: int
    errors: list[dict[str, Any]]

    @classmethod
    def from_domain(cls, log: CatalogSyncLog) -> "SyncLogResponse":
        return cls(
            sync_id=log.sync_id,
            start_time=log.start_time,
            end_time=log.end_time,
            status=log.status,
            sync_mode=log.sync_mode,
            triggered_by=log.triggered_by,
            apps_added=log.apps_added,
            apps_updated=log.apps_updated,
            apps_marked_unavailable=log.apps_marked_unavailable,
            errors=log.errors,
        )


class SyncSettingsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    frequency_hours: int
    last_run: Optional[str]


class SyncStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    settings: SyncSettingsResponse
    last_sync: Optional[SyncLogResponse]


class SyncSettingsUpdate(BaseModel):
    """Request body for PUT /api/v1/catalog/sync/settings. Omitted fields are unchanged."""

    sync_enabled: Optional[bool] = None
    frequency_hours: Optional[int] = Field(default=None, ge=1, le=168)


class StoreSyncResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    apps_synced: int
    total_catalog_apps: int


class StoreSyncStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    catalog_apps: int
    store_apps: int
    unsynced: int


# ---------------------------------------------------------------------------
# Tiles
# ---------------------------------------------------------------------------


class TileCreate(BaseModel):
    """Request body for POST /api/v1/admin/apps."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    launch_url: str = Field(min_length=1, max_length=2048)
    description: Optional[str] = Field(default=None, max_length=5000)
    short_description: Optional[str] = Field(default=None, max_length=500)
    category: str = Field(default="General", max_length=100)
    logo_url: Optional[str] = Field(default=None, max_length=2048)
    icon_url: Optional[str] = Field(default=None, max_length=2048)
    auth_type: Optional[str] = Field(default=None, max_length=50)
    tags: list[str] = Field(default_factory=list, max_length=20)
    publisher: Optional[str] = Field(default=None, max_length=255)
    version: Optional[str] = Field(default=None, max_length=50)
    app_identifier: Optional[str] = Field(default=None, max_length=255)
    is_available_in_store: bool = False
    requires_approval: bool = True
    status: TileStatusEnum = TileStatusEnum.active


class TileUpdate(BaseModel):
    """Request body for PUT /api/v1/admin/apps/{tile_id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    launch_url: Optional[str] = Field(default=None, min_length=1, max_length=2048)
    description: Optional[str] = Field(default=None, max_length=5000)
    short_description: Optional[str] = Field(default=None, max_length=500)
    category: Optional[str] = Field(default=None, max_length=100)
    logo_url: Optional[str] = Field(default=None, max_length=2048)
    icon_url: Optional[str] = Field(default=None, max_length=2048)
    auth_type: Optional[str] = Field(default=None, max_length=50)
    tags: Optional[list[str]] = Field(default=None, max_length=20)
    publisher: Optional[str] = Field(default=None, max_length=255)
    version: Optional[str] = Field(default=None, max_length=50)
    app_identifier: Optional[str] = Field(default=None, max_length=255)
    is_available_in_store: Optional[bool] = None
    requires_approval: Optional[bool] = None
    status: Optional[TileStatusEnum] = None


class TileResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str]
    short_description: Optional[str]
    category: str
    logo_url: Optional[str]
    icon_url: Optional[str]
    launch_url: Optional[str]
    auth_type: Optional[str]
    tags: list[str]
    publisher: Optional[str]
    version: Optional[str]
    app_identifier: Optional[str]
    is_available_in_store: bool
    requires_approval: bool
    status: str
    sync_status: str
    master_catalog_synced_at: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, tile: ApplicationTile) -> "TileResponse":
        return cls(
            id=tile.id,
            name=tile.name,
            description=tile.description,
            short_description=tile.short_description,
            category=tile.category,
            logo_url=tile.logo_url,
            icon_url=tile.icon_url,
            launch_url=tile.launch_url,
            auth_type=tile.auth_type,
            tags=tile.tags,
            publisher=tile.publisher,
            version=tile.version,
            app_identifier=tile.app_identifier,
            is_available_in_store=tile.is_available_in_store,
            requires_approval=tile.requires_approval,
            status=tile.status,
            sync_status=tile.sync_status,
            master_catalog_synced_at=tile.master_catalog_synced_at,
            created_at=tile.created_at,
            updated_at=tile.updated_at,
        )


class StoreTileResponse(BaseModel):
    """One row of GET /api/v1/store: a tile plus the caller's relationship to it."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    short_description: Optional[str]
    category: str
    icon_url: Optional[str]
    publisher: Optional[str]
    requires_approval: bool
    user_status: str  # "assigned" | "requested" | "available"


# ---------------------------------------------------------------------------
# Assignments / launch
# ---------------------------------------------------------------------------


class AssignmentCreate(BaseModel):
    """Request body for POST /api/v1/admin/assignments/users/{user_id}.

    ``credentials`` is stored Fernet-encrypted and only returned by launch.
    A ``pin`` implies requires_pin.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    app_tile_id: str = Field(min_length=1, max_length=36)
    app_username: Optional[str] = Field(default=None, max_length=255)
    pin: Optional[str] = Field(default=None, pattern=PIN_PATTERN)
    requires_pin: bool = False
    credentials: Optional[dict[str, str]] = None


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: int
    app_tile_id: str
    app_name: str
    app_username: Optional[str]
    requires_pin: bool
    has_credentials: bool
    assigned_by: Optional[int]
    assigned_at: str

    @classmethod
    def from_domain(cls, assignment: UserAppAssignment, tile: ApplicationTile) -> "AssignmentResponse":
        return cls(
            id=assignment.id,
            user_id=assignment.user_id,
            app_tile_id=assignment.app_tile_id,
            app_name=tile.name,
            app_username=assignment.app_username,
            requires_pin=assignment.requires_pin,
            has_credentials=assignment.encrypted_credentials is not None,
            assigned_by=assignment.assigned_by,
            assigned_at=assignment.assigned_at,
        )


class LaunchBody(BaseModel):
    pin: Optional[str] = Field(default=None, pattern=PIN_PATTERN)


class LaunchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    launch_url: Optional[str]
    app_username: Optional[str]
    credentials: Optional[dict[str, str]] = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    actor_id: Optional[int]
    action: str
    target_id: Optional[str]
    details: dict[str, Any]
    ip_address: Optional[str]
    created_at: str

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            action=entry.action,
            target_id=entry.target_id,
            details=entry.details,
            ip_address=entry.ip_address,
            created_at=entry.created_at,
        )


# ---------------------------------------------------------------------------
# System settings
# ---------------------------------------------------------------------------


class SettingUpdate(BaseModel):
    """Request body for PUT /api/v1/admin/settings/{key}. Any JSON value is accepted."""

    value: Any = None


class SettingResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    value: Any
