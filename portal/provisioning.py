"""
portal/provisioning.py -- Provisioning step run inside an approve transaction.

Resolves (or creates) the catalog tile an approved request points at, then
grants it to the requester. Every write goes through the caller's ``conn``,
so if anything here raises, the approve transaction rolls back and no tile,
assignment, or binding survives.

Resolution order:
  1. Request already bound to an existing app  -> use it.
  2. In-store tile matches the free-text name   -> bind it.
  3. Tile exists under the derived identifier   -> publish and bind it.
  4. Otherwise create a new active, in-store tile and bind it.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Connection

from portal.models import ApplicationTile, AppRequest, AuditEntry, UserAppAssignment
from portal.store import PortalStore

logger = logging.getLogger("appportal.requests")

_WHITESPACE_RE = re.compile(r"\s+")


def derive_identifier(name: str) -> str:
    """'Adobe Figma' -> 'adobe-figma'."""
    return _WHITESPACE_RE.sub("-", name.strip().lower())


@dataclass
class ProvisionResult:
    app_id: Optional[str]
    tile_created: bool = False
    assignment_created: bool = False


def _resolve_tile(
    store: PortalStore,
    conn: Connection,
    request: AppRequest,
    actor_id: int,
) -> tuple[str, bool]:
    """Return (app_id, created) for the tile this request should be granted."""
    if request.app_exists_in_store and request.app_id:
        if store.get_tile(request.app_id, conn=conn) is not None:
            return request.app_id, False
        # Tile deleted since submission; resolve again by the stored name.
        logger.warning("Request %s points at deleted tile %s; resolving by name", request.id, request.app_id)

    match = store.find_store_tile(conn, request.app_identifier_or_name, active_only=False)
    if match is not None:
        return match.id, False

    identifier = derive_identifier(request.app_identifier_or_name)
    # app_identifier is unique: a delisted tile under the same identifier is
    # brought back into the store instead of colliding with a new insert.
    existing = store.get_tile_by_identifier(identifier, conn=conn)
    if existing is not None:
        store.update_tile(existing.id, conn=conn, is_available_in_store=True, status="active")
        return existing.id, False

    tile_id = store.create_tile(
        ApplicationTile(
            name=request.app_identifier_or_name.strip(),
            app_identifier=identifier,
            description=f"Added via request from user {request.user_id}",
            is_available_in_store=True,
            status="active",
            created_by=actor_id,
        ),
        conn=conn,
    )
    return tile_id, True


def provision(
    store: PortalStore,
    conn: Connection,
    request: AppRequest,
    actor_id: int,
    ip_address: Optional[str] = None,
) -> ProvisionResult:
    """Bind the request to a tile and assign it to the requester.

    Idempotent on the assignment: an existing (user, tile) grant is kept.
    """
    app_id, created = _resolve_tile(store, conn, request, actor_id)
    if app_id != request.app_id or not request.app_exists_in_store:
        store.bind_request_app(conn, request.id, app_id)

    inserted = store.insert_assignment(
        conn,
        UserAppAssignment(user_id=request.user_id, app_tile_id=app_id, assigned_by=actor_id),
        ignore_conflict=True,
    )
    store.write_audit(
        AuditEntry(
            actor_id=actor_id,
            action="request.approved",
            target_id=request.id,
            details={
                "user_id": request.user_id,
                "app_id": app_id,
                "tile_created": created,
                "assignment_created": inserted,
            },
            ip_address=ip_address,
        ),
        conn=conn,
    )
    logger.info(
        "Provisioned request %s: app %s for user %s (tile_created=%s, assignment_created=%s)",
        request.id,
        app_id,
        request.user_id,
        created,
        inserted,
    )
    return ProvisionResult(app_id=app_id, tile_created=created, assignment_created=inserted)
