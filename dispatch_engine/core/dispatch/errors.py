# dispatch_engine/core/dispatch/errors.py
"""
Typed domain errors for the dispatch engine.

Each error maps to a specific HTTP status code.  The transport layer
catches ``DispatchError`` subtypes and converts them to ``HTTPException``
without embedding business logic in the route handlers.

Double-accepts and responses to withdrawn offers are *not* errors: they come
back as ``CommandResult(outcome=CONFLICT)``.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class NotFoundError(DispatchError):
    """Unknown job or attempt (404)."""

    status_code = 404


class InvalidTransitionError(DispatchError):
    """Requested status change is not a legal transition (409)."""

    status_code = 409


class ConflictError(DispatchError):
    """Job record changed since the caller last read it (409). Safe to retry."""

    status_code = 409


class ConfigurationError(DispatchError):
    """Policy values could not be resolved and nothing is cached (503)."""

    status_code = 503


class StaleVersionError(ConflictError):
    """Raised by stores when a compare-and-swap on the job version fails."""

    def __init__(self, job_id: str, expected: int, actual: int | None):
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Job {job_id} changed (expected version {expected}, found {actual})"
        )


class DirectoryUnavailableError(DispatchError):
    """Candidate directory failed after retries, or refused the query (503)."""

    status_code = 503
