"""
api/routes/v1/admin_requests.py -- Admin review of app requests.

Routes:
  GET  /admin/requests                      -- all requests + per-status counts
  GET  /admin/requests/{request_id}         -- detail + history
  POST /admin/requests/{request_id}/review  -- submitted -> in_review
  POST /admin/requests/{request_id}/approve -- approve + provision + implement
  POST /admin/requests/{request_id}/deny    -- reject with a mandatory reason

Approval is atomic: either the request ends implemented (or approved if no
app could be bound) with its tile and assignment in place, or nothing
changed and the caller gets a 500 internal_error.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    AdminRequestListResponse,
    AppRequestDetailResponse,
    AppRequestResponse,
    ApproveResponse,
    DenyBody,
    Pagination,
    ReviewBody,
)
from auth.dependencies import require_permission
from auth.models import User
from portal.lifecycle import RequestLifecycle
from portal.models import RequestStatus

router = APIRouter()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# GET /admin/requests -- filtered queue with status counts
# ---------------------------------------------------------------------------


@router.get("/admin/requests", response_model=AdminRequestListResponse)
def admin_list_requests(
    request: Request,
    status: Optional[RequestStatus] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(require_permission("app_requests.read")),
) -> AdminRequestListResponse:
    """Return every request (open first) with counts per status for the dashboard badges."""
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    page = lifecycle.admin_list(status=status, limit=limit, offset=offset)
    return AdminRequestListResponse(
        requests=[AppRequestResponse.from_domain(r) for r in page.requests],
        counts=page.counts,
        pagination=Pagination(limit=page.limit, offset=page.offset, total=page.total),
    )


# ---------------------------------------------------------------------------
# GET /admin/requests/{request_id} -- request detail with history
# ---------------------------------------------------------------------------


@router.get("/admin/requests/{request_id}", response_model=AppRequestDetailResponse)
def admin_get_request(
    request: Request,
    request_id: str,
    current_user: User = Depends(require_permission("app_requests.read")),
) -> AppRequestDetailResponse:
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    req, history = lifecycle.get(request_id, current_user.id, view_all=True)
    return AppRequestDetailResponse.from_domain_with_history(req, history)


# ---------------------------------------------------------------------------
# POST /admin/requests/{request_id}/review -- move a request into review
# ---------------------------------------------------------------------------


@router.post("/admin/requests/{request_id}/review", response_model=AppRequestResponse)
def review_request(
    request: Request,
    request_id: str,
    body: Optional[ReviewBody] = None,
    current_user: User = Depends(require_permission("app_requests.approve")),
) -> AppRequestResponse:
    """Take a submitted request into review."""
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    note = body.note if body else None
    reviewed = lifecycle.review(request_id, current_user.id, note=note, ip_address=_client_ip(request))
    return AppRequestResponse.from_domain(reviewed)


# ---------------------------------------------------------------------------
# POST /admin/requests/{request_id}/approve -- approve and provision
# ---------------------------------------------------------------------------


@router.post("/admin/requests/{request_id}/approve", response_model=ApproveResponse)
def approve_request(
    request: Request,
    request_id: str,
    body: Optional[ReviewBody] = None,
    current_user: User = Depends(require_permission("app_requests.approve")),
) -> ApproveResponse:
    """Approve a request and provision the app to the requester."""
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    note = body.note if body else None
    approved, result = lifecycle.approve(request_id, current_user.id, note=note, ip_address=_client_ip(request))
    return ApproveResponse(
        message="Request approved successfully",
        app_added=result.app_id is not None,
        app_id=result.app_id,
        status=approved.status,
        request=AppRequestResponse.from_domain(approved),
    )


# ---------------------------------------------------------------------------
# POST /admin/requests/{request_id}/deny -- deny with a reason
# ---------------------------------------------------------------------------


@router.post("/admin/requests/{request_id}/deny", response_model=AppRequestResponse)
def deny_request(
    request: Request,
    request_id: str,
    body: DenyBody,
    current_user: User = Depends(require_permission("app_requests.deny")),
) -> AppRequestResponse:
    """Reject a request. The reason is stored and shown to the requester."""
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    denied = lifecycle.deny(request_id, current_user.id, body.reason, ip_address=_client_ip(request))
    return AppRequestResponse.from_domain(denied)
