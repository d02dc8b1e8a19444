"""
portal/lifecycle.py -- App request lifecycle engine.

State machine (terminal states marked *):

    submitted -> in_review | approved | rejected | cancelled
    in_review -> approved | rejected | cancelled
    approved  -> implemented*
    rejected*, cancelled*

Every transition runs in one transaction that:
  - re-reads the request,
  - checks the action's precondition,
  - writes the new status with a conditional UPDATE (status must still be
    what was read, see PortalStore.update_request_status),
  - appends exactly one history row per status change,
  - writes an audit entry.

approve additionally runs the provisioning step inside the same transaction
and advances to implemented once an app is bound. If anything unexpected
fails, the whole transaction rolls back, an ``request.approve_failed`` audit
row is written separately, and InternalError is raised.

Layer rule: no imports from api/ or auth/. Principals arrive as plain ids
plus a ``view_all`` flag decided by the caller's permission check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.engine import Connection

from core.exceptions import (
    AlreadyAssigned,
    AlreadyInStore,
    DuplicateOpenRequest,
    Forbidden,
    InternalError,
    InvalidTransition,
    NotCancellable,
    NotFound,
    NotReviewable,
    PortalError,
    ValidationError,
)
from portal.models import (
    AppRequest,
    AuditEntry,
    RequestHistoryEntry,
    RequestStatus,
    UserAppAssignment,
)
from portal.provisioning import ProvisionResult, provision
from portal.store import PortalStore, normalize_target

logger = logging.getLogger("appportal.requests")

S = RequestStatus

TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    S.submitted: frozenset({S.in_review, S.approved, S.rejected, S.cancelled}),
    S.in_review: frozenset({S.approved, S.rejected, S.cancelled}),
    S.approved: frozenset({S.implemented}),
    S.implemented: frozenset(),
    S.rejected: frozenset(),
    S.cancelled: frozenset(),
}

_METADATA_FIELDS = ("cost_center", "priority", "desired_by_date", "notes")


def assert_transition(current: RequestStatus, target: RequestStatus) -> None:
    """Raise InvalidTransition unless current -> target is an edge of the graph."""
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


def is_valid_path(statuses: list[RequestStatus]) -> bool:
    """True if ``statuses`` starts at submitted and only follows graph edges."""
    if not statuses or statuses[0] != S.submitted:
        return False
    return all(b in TRANSITIONS[a] for a, b in zip(statuses, statuses[1:]))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class StoreRequestOutcome:
    """Result of requesting an in-store tile: either a request or a direct grant."""

    request: Optional[AppRequest] = None
    auto_assigned: bool = False


@dataclass
class RequestPage:
    requests: list[AppRequest]
    total: int
    limit: int
    offset: int
    counts: dict[str, int] = field(default_factory=dict)


class RequestLifecycle:
    """Drives AppRequest through its state machine on top of a PortalStore."""

    def __init__(self, store: PortalStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load(self, conn: Connection, request_id: str) -> AppRequest:
        req = self.store.get_request(request_id, conn=conn)
        if req is None:
            raise NotFound("Request", request_id)
        return req

    def _move(
        self,
        conn: Connection,
        req: AppRequest,
        target: RequestStatus,
        changed_by: Optional[int],
        note: Optional[str],
        **fields: Any,
    ) -> None:
        assert_transition(req.status, target)
        self.store.update_request_status(conn, req.id, [req.status], target, **fields)
        self.store.insert_history(
            conn,
            RequestHistoryEntry(request_id=req.id, status=target, changed_by=changed_by, note=note),
        )
        req.status = target

    @staticmethod
    def _metadata(metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
        metadata = metadata or {}
        return {k: metadata.get(k) for k in _METADATA_FIELDS}

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def submit(
        self,
        user_id: int,
        target_name: str,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> AppRequest:
        """Create a request for an app that is not (yet) in the store."""
        target_name = (target_name or "").strip()
        reason = (reason or "").strip()
        if not target_name:
            raise ValidationError("App name or identifier is required.")
        if not reason:
            raise ValidationError("A business justification is required.")

        with self.store.transaction() as conn:
            in_store = self.store.find_store_tile(conn, target_name)
            if in_store is not None:
                raise AlreadyInStore(in_store.id)
            existing = self.store.find_open_request(conn, user_id, target_key=normalize_target(target_name))
            if existing is not None:
                raise DuplicateOpenRequest(existing.id, existing.status.value)

            req = AppRequest(
                user_id=user_id,
                app_identifier_or_name=target_name,
                reason=reason,
                **self._metadata(metadata),
            )
            req.id = self.store.insert_request(conn, req)
            self.store.insert_history(
                conn,
                RequestHistoryEntry(
                    request_id=req.id, status=S.submitted, changed_by=user_id, note="Request submitted"
                ),
            )
            self.store.write_audit(
                AuditEntry(
                    actor_id=user_id,
                    action="request.created",
                    target_id=req.id,
                    details={"app_identifier_or_name": target_name},
                    ip_address=ip_address,
                ),
                conn=conn,
            )
        logger.info("Request %s submitted by user %s for %r", req.id, user_id, target_name)
        return self.store.get_request(req.id)

    def submit_for_tile(
        self,
        user_id: int,
        tile_id: str,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> StoreRequestOutcome:
        """Request access to a tile that is already in the store.

        Tiles with requires_approval=False are granted immediately and no
        request row is created.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A business justification is required.")

        with self.store.transaction() as conn:
            tile = self.store.get_tile(tile_id, conn=conn)
            if tile is None or not tile.is_available_in_store or tile.status != "active":
                raise NotFound("App", tile_id)
            if self.store.get_assignment(user_id, tile_id, conn=conn) is not None:
                raise AlreadyAssigned("You already have access to this app.", app_id=tile_id)
            existing = self.store.find_open_request(conn, user_id, app_id=tile_id)
            if existing is not None:
                raise DuplicateOpenRequest(existing.id, existing.status.value)

            if not tile.requires_approval:
                self.store.insert_assignment(
                    conn,
                    UserAppAssignment(user_id=user_id, app_tile_id=tile_id, assigned_by=user_id),
                )
                self.store.write_audit(
                    AuditEntry(
                        actor_id=user_id,
                        action="app.self_assigned",
                        target_id=tile_id,
                        details={"app_name": tile.name},
                        ip_address=ip_address,
                    ),
                    conn=conn,
                )
                logger.info("Tile %s self-assigned by user %s", tile_id, user_id)
                return StoreRequestOutcome(auto_assigned=True)

            req = AppRequest(
                user_id=user_id,
                app_identifier_or_name=tile.name,
                app_id=tile.id,
                app_exists_in_store=True,
                reason=reason,
                **self._metadata(metadata),
            )
            req.id = self.store.insert_request(conn, req)
            self.store.insert_history(
                conn,
                RequestHistoryEntry(
                    request_id=req.id, status=S.submitted, changed_by=user_id, note="Request submitted"
                ),
            )
            self.store.write_audit(
                AuditEntry(
                    actor_id=user_id,
                    action="request.created",
                    target_id=req.id,
                    details={"app_id": tile.id, "app_name": tile.name},
                    ip_address=ip_address,
                ),
                conn=conn,
            )
        logger.info("Request %s submitted by user %s for tile %s", req.id, user_id, tile_id)
        return StoreRequestOutcome(request=self.store.get_request(req.id))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def review(
        self,
        request_id: str,
        actor_id: int,
        note: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AppRequest:
        """Mark a submitted request as under review."""
        with self.store.transaction() as conn:
            req = self._load(conn, request_id)
            if req.status != S.submitted:
                raise NotReviewable("Only submitted requests can be moved to review.", status=req.status.value)
            self._move(conn, req, S.in_review, actor_id, note or "Request under review", reviewed_by=actor_id)
            self.store.write_audit(
                AuditEntry(actor_id=actor_id, action="request.reviewed", target_id=request_id, ip_address=ip_address),
                conn=conn,
            )
        return self.store.get_request(request_id)

    def approve(
        self,
        request_id: str,
        actor_id: int,
        note: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> tuple[AppRequest, ProvisionResult]:
        """Approve, provision, and (when an app is bound) implement a request atomically."""
        try:
            with self.store.transaction() as conn:
                req = self._load(conn, request_id)
                if not req.is_open:
                    raise NotReviewable("Request is not pending review.", status=req.status.value)
                self._move(
                    conn,
                    req,
                    S.approved,
                    actor_id,
                    note or "Request approved",
                    reviewed_by=actor_id,
                    reviewed_at=_now_iso(),
                    admin_note=note,
                )
                result = provision(self.store, conn, req, actor_id, ip_address=ip_address)
                if result.app_id is not None:
                    self._move(conn, req, S.implemented, actor_id, "App added to store and assigned")
        except PortalError:
            raise
        except Exception as exc:
            logger.exception("Approve failed for request %s; transaction rolled back", request_id)
            self.store.write_audit(
                AuditEntry(
                    actor_id=actor_id,
                    action="request.approve_failed",
                    target_id=request_id,
                    details={"error": str(exc)},
                    ip_address=ip_address,
                )
            )
            raise InternalError("Approval failed; the request was left unchanged.") from exc

        logger.info("Request %s approved by user %s (app_id=%s)", request_id, actor_id, result.app_id)
        return self.store.get_request(request_id), result

    def deny(
        self,
        request_id: str,
        actor_id: int,
        reason: str,
        ip_address: Optional[str] = None,
    ) -> AppRequest:
        """Reject an open request. A non-blank reason is mandatory."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to deny a request.")

        with self.store.transaction() as conn:
            req = self._load(conn, request_id)
            if not req.is_open:
                raise NotReviewable("Request is not pending review.", status=req.status.value)
            self._move(
                conn,
                req,
                S.rejected,
                actor_id,
                reason,
                reviewed_by=actor_id,
                reviewed_at=_now_iso(),
                deny_reason=reason,
            )
            self.store.write_audit(
                AuditEntry(
                    actor_id=actor_id,
                    action="request.rejected",
                    target_id=request_id,
                    details={"reason": reason},
                    ip_address=ip_address,
                ),
                conn=conn,
            )
        logger.info("Request %s denied by user %s", request_id, actor_id)
        return self.store.get_request(request_id)

    def cancel(self, request_id: str, user_id: int, ip_address: Optional[str] = None) -> AppRequest:
        """Withdraw an open request. Only its requester may do this."""
        with self.store.transaction() as conn:
            req = self._load(conn, request_id)
            if req.user_id != user_id:
                raise Forbidden("Only the requester can cancel this request.")
            if not req.is_open:
                raise NotCancellable(
                    f"Cannot cancel a request that is {req.status.value}.",
                    status=req.status.value,
                )
            self._move(conn, req, S.cancelled, user_id, "Request cancelled by user")
            self.store.write_audit(
                AuditEntry(actor_id=user_id, action="request.cancelled", target_id=request_id, ip_address=ip_address),
                conn=conn,
            )
        logger.info("Request %s cancelled by requester %s", request_id, user_id)
        return self.store.get_request(request_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(
        self,
        request_id: str,
        user_id: int,
        view_all: bool = False,
    ) -> tuple[AppRequest, list[RequestHistoryEntry]]:
        req = self.store.get_request(request_id)
        if req is None:
            raise NotFound("Request", request_id)
        if not view_all and req.user_id != user_id:
            raise Forbidden("You do not have access to this request.")
        return req, self.store.get_history(request_id)

    def list(
        self,
        user_id: int,
        view_all: bool = False,
        status: Optional[RequestStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> RequestPage:
        """Role-scoped listing: own requests, or everything when view_all."""
        owner = None if view_all else user_id
        return RequestPage(
            requests=self.store.list_requests(user_id=owner, status=status, limit=limit, offset=offset),
            total=self.store.count_requests(user_id=owner, status=status),
            limit=limit,
            offset=offset,
        )

    def admin_list(
        self,
        status: Optional[RequestStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> RequestPage:
        page = self.list(user_id=0, view_all=True, status=status, limit=limit, offset=offset)
        page.counts = self.store.count_requests_by_status()
        return page
