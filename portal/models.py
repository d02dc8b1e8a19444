"""
portal/models.py -- Domain dataclasses for the AppPortal request and catalog core.

These are pure data containers. All business logic (state machine, duplicate
detection, provisioning, reconciliation) lives in portal/lifecycle.py,
portal/provisioning.py and portal/sync.py; persistence lives in portal/store.py.

Separation of concerns: these dataclasses are the portal's domain truth. The
pydantic models in api/models.py are the HTTP contract; routes map between them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class RequestStatus(str, Enum):
    """Closed set of AppRequest states.

    The legacy ``PENDING`` literal found in old rows is not a member; the
    store normalizes it to ``submitted`` when mapping rows.
    """

    submitted = "submitted"
    in_review = "in_review"
    approved = "approved"
    rejected = "rejected"
    implemented = "implemented"
    cancelled = "cancelled"


OPEN_STATUSES = frozenset({RequestStatus.submitted, RequestStatus.in_review})
TERMINAL_STATUSES = frozenset({RequestStatus.implemented, RequestStatus.rejected, RequestStatus.cancelled})


@dataclass
class AppRequest:
    """A user's request for access to an app.

    Addressing: when ``app_exists_in_store`` is True, ``app_id`` is the
    authoritative target. Otherwise ``app_identifier_or_name`` is, and
    ``app_id`` is None until provisioning binds one.

    id is None before the record is written to the database.
    """

    user_id: int
    app_identifier_or_name: str
    reason: str
    status: RequestStatus = RequestStatus.submitted
    id: Optional[str] = None
    app_id: Optional[str] = None
    app_exists_in_store: bool = False
    cost_center: Optional[str] = None
    priority: Optional[str] = None
    desired_by_date: Optional[str] = None
    notes: Optional[str] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[str] = None
    admin_note: Optional[str] = None
    deny_reason: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


@dataclass
class RequestHistoryEntry:
    """One immutable row of a request's transition trail."""

    request_id: str
    status: RequestStatus
    changed_by: Optional[int] = None  # None = system-originated
    note: Optional[str] = None
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class ApplicationTile:
    """A catalog entry for one internal application."""

    name: str
    launch_url: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    category: str = "General"
    logo_url: Optional[str] = None
    icon_url: Optional[str] = None
    auth_type: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    publisher: Optional[str] = None
    version: Optional[str] = None
    app_identifier: Optional[str] = None
    is_available_in_store: bool = False
    requires_approval: bool = True
    status: str = "active"  # "active" | "inactive"
    sync_status: str = "pending"  # "pending" | "synced" | "unavailable"
    master_catalog_synced_at: Optional[str] = None
    created_by: Optional[int] = None
    id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class UserAppAssignment:
    """Grant linking one user to one tile.

    pin_hash is a bcrypt hash; encrypted_credentials is a Fernet token.
    Neither is ever returned to clients in raw form.
    """

    user_id: int
    app_tile_id: str
    app_username: Optional[str] = None
    pin_hash: Optional[str] = None
    requires_pin: bool = False
    encrypted_credentials: Optional[str] = None
    assigned_by: Optional[int] = None
    id: Optional[str] = None
    assigned_at: str = ""


@dataclass
class CatalogSyncLog:
    """Lifecycle record of one catalog sync run."""

    sync_id: str
    start_time: str
    status: str = "running"  # "running" | "completed" | "failed"
    sync_mode: str = "on_demand"  # "on_demand" | "scheduled"
    triggered_by: Optional[int] = None
    end_time: Optional[str] = None
    apps_added: int = 0
    apps_updated: int = 0
    apps_marked_unavailable: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    id: Optional[int] = None


@dataclass
class AuditEntry:
    action: str
    actor_id: Optional[int] = None
    target_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    id: Optional[int] = None
    created_at: str = ""


@dataclass(frozen=True)
class SyncConfig:
    """Sync settings loaded once per sync invocation and passed to the job."""

    enabled: bool = True
    frequency_hours: int = 6
    last_run: Optional[str] = None
    stale_after_hours: int = 24


@dataclass
class ReconcileResult:
    apps_added: int = 0
    apps_updated: int = 0
    apps_marked_unavailable: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
