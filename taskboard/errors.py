from __future__ import annotations

from typing import Any, Optional


class TaskboardError(Exception):
    """Base class for errors surfaced to API callers.

    ``code`` is the machine readable token placed in the error envelope and
    ``status_code`` the HTTP status the API layer answers with.
    """

    code = "error"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidRange(TaskboardError):
    code = "invalid_range"
    status_code = 400


class InvalidRequest(TaskboardError):
    code = "invalid_request"
    status_code = 400


class NotFound(TaskboardError):
    code = "not_found"
    status_code = 404


class Forbidden(TaskboardError):
    code = "forbidden"
    status_code = 403


class StaleState(TaskboardError):
    """The caller's view of a member's container or position is out of date."""

    code = "stale_state"
    status_code = 409


class StorageUnavailable(TaskboardError):
    """A storage operation did not complete.

    Part of a move may already be applied; re-read the container (or run a
    reconcile pass) before trusting its ordering.
    """

    code = "storage_unavailable"
    status_code = 503
