"""
core/exceptions.py -- Domain exception hierarchy for AppPortal.

Every error the portal layer raises derives from PortalError, which carries
a stable machine-readable ``code``, the HTTP status the API layer should use,
and an optional ``context`` dict that is merged into the error envelope
(e.g. the existing request id for DuplicateOpenRequest).

The API layer registers one handler for PortalError (see api/main.py); the
portal layer never imports FastAPI.

Layer rule: core/ is the kernel. No imports from api/, auth/, or portal/.
"""

from __future__ import annotations

from typing import Any


class PortalError(Exception):
    """Base class for all portal domain errors."""

    code = "portal_error"
    status_code = 500

    def __init__(self, message: str = "", **context: Any) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.context}


# ---------------------------------------------------------------------------
# Input / principal errors
# ---------------------------------------------------------------------------


class ValidationError(PortalError):
    """Request content failed validation."""

    code = "validation_error"
    status_code = 400


class Forbidden(PortalError):
    """The principal may not perform this operation."""

    code = "forbidden"
    status_code = 403


class NotFound(PortalError):
    """Resource not found."""

    code = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None) -> None:
        message = f"{resource} not found." if resource_id is None else f"{resource} '{resource_id}' not found."
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


# ---------------------------------------------------------------------------
# Conflicts (state-dependent failures)
# ---------------------------------------------------------------------------


class Conflict(PortalError):
    """The operation conflicts with current state."""

    code = "conflict"
    status_code = 409


class DuplicateOpenRequest(Conflict):
    """An open request for this app already exists."""

    code = "duplicate_open_request"
    status_code = 400

    def __init__(self, request_id: str, status: str) -> None:
        super().__init__(
            "You already have a pending request for this app.",
            request_id=request_id,
            status=status,
        )


class AlreadyInStore(Conflict):
    """The requested app is already available in the store."""

    code = "already_in_store"
    status_code = 400

    def __init__(self, app_id: str) -> None:
        super().__init__(
            "This app is already available in the store. Request it from the store instead.",
            app_id=app_id,
        )


class AlreadyAssigned(Conflict):
    """The app is already assigned to this user."""

    code = "already_assigned"
    status_code = 400


class NotReviewable(Conflict):
    """The request is not pending review."""

    code = "not_reviewable"
    status_code = 400


class NotCancellable(Conflict):
    """The request can no longer be cancelled."""

    code = "not_cancellable"
    status_code = 400


class InvalidTransition(Conflict):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move request from '{current}' to '{target}'.",
            current=current,
            target=target,
        )


class ConcurrentModification(Conflict):
    """The request was modified by another operation. Reload and retry."""

    code = "concurrent_modification"
    status_code = 409


# ---------------------------------------------------------------------------
# Sync / internal
# ---------------------------------------------------------------------------


class SyncDisabled(PortalError):
    """Catalog sync is disabled."""

    code = "sync_disabled"
    status_code = 400


class PinLocked(PortalError):
    """Too many failed PIN attempts for this app. Try again later."""

    code = "pin_locked"
    status_code = 429


class InternalError(PortalError):
    """An unexpected error occurred."""

    code = "internal_error"
    status_code = 500
