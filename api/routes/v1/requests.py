"""
api/routes/v1/requests.py -- User-facing app request routes.

Routes:
  POST   /requests              -- submit a request for an app not in the store
  GET    /requests              -- list own requests (admins: all requests)
  GET    /requests/{request_id} -- request detail + history
  DELETE /requests/{request_id} -- cancel own open request

Domain errors raised by RequestLifecycle (ValidationError, AlreadyInStore,
DuplicateOpenRequest, NotCancellable, ...) propagate to the PortalError
handler in api/main.py, which renders the standard error envelope.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AppRequestCreate, AppRequestDetailResponse, AppRequestResponse
from auth.dependencies import can_view_all_requests, require_permission
from auth.models import User
from portal.lifecycle import RequestLifecycle
from portal.models import RequestStatus

router = APIRouter()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# POST /requests -- submit a new app request
# ---------------------------------------------------------------------------


@router.post("/requests", response_model=AppRequestResponse, status_code=201)
def submit_request(
    request: Request,
    body: AppRequestCreate,
    current_user: User = Depends(require_permission("requests.create")),
) -> AppRequestResponse:
    """Request an app that is not yet available in the store."""
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    created = lifecycle.submit(
        user_id=current_user.id,
        target_name=body.app_identifier_or_name,
        reason=body.reason,
        metadata=body.to_metadata(),
        ip_address=_client_ip(request),
    )
    return AppRequestResponse.from_domain(created)


# ---------------------------------------------------------------------------
# GET /requests -- list requests visible to the caller
# ---------------------------------------------------------------------------


@router.get("/requests", response_model=list[AppRequestResponse])
def list_requests(
    request: Request,
    status: Optional[RequestStatus] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(require_permission("requests.view_own")),
) -> list[AppRequestResponse]:
    """Return the caller's requests, open ones first. Admins see every request."""
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    page = lifecycle.list(
        user_id=current_user.id,
        view_all=can_view_all_requests(current_user),
        status=status,
        limit=limit,
        offset=offset,
    )
    return [AppRequestResponse.from_domain(r) for r in page.requests]


# ---------------------------------------------------------------------------
# GET /requests/{request_id} -- request detail with history
# ---------------------------------------------------------------------------


@router.get("/requests/{request_id}", response_model=AppRequestDetailResponse)
def get_request(
    request: Request,
    request_id: str,
    current_user: User = Depends(require_permission("requests.view_own")),
) -> AppRequestDetailResponse:
    """Return one request with its full transition history (oldest first)."""
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    req, history = lifecycle.get(request_id, current_user.id, view_all=can_view_all_requests(current_user))
    return AppRequestDetailResponse.from_domain_with_history(req, history)


# ---------------------------------------------------------------------------
# DELETE /requests/{request_id} -- cancel an own open request
# ---------------------------------------------------------------------------


@router.delete("/requests/{request_id}", response_model=AppRequestResponse)
def cancel_request(
    request: Request,
    request_id: str,
    current_user: User = Depends(require_permission("requests.view_own")),
) -> AppRequestResponse:
    """Cancel one of the caller's own open requests."""
    lifecycle: RequestLifecycle = request.app.state.lifecycle
    cancelled = lifecycle.cancel(request_id, current_user.id, ip_address=_client_ip(request))
    return AppRequestResponse.from_domain(cancelled)
