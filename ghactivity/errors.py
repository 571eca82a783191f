"""Domain errors surfaced at the API boundary.

Each error carries a stable ``code`` that routers return alongside the HTTP
status so clients can tell consistency failures apart from generic ones.
"""
from __future__ import annotations

from fastapi import HTTPException


class ActivityError(Exception):
    code = "internal_error"


class InvalidIdError(ActivityError, ValueError):
    code = "invalid_id"


class InvalidFilterError(ActivityError, ValueError):
    code = "invalid_filter"


class InvalidTokenError(ActivityError, ValueError):
    code = "invalid_token"


class ItemNotFoundError(ActivityError, LookupError):
    code = "not_found"


class FilterFingerprintMismatchError(ActivityError, ValueError):
    code = "filter_fingerprint_mismatch"


class TokenExpiredError(ActivityError, ValueError):
    code = "token_expired"


class StatusLockedError(ActivityError, ValueError):
    code = "status_locked"

    def __init__(self, message: str, todo_status: str | None = None):
        super().__init__(message)
        self.todo_status = todo_status


class ProjectFieldConflictError(ActivityError, ValueError):
    code = "project_field_conflict"


class InvalidPayloadError(ActivityError, ValueError):
    code = "invalid_payload"


HTTP_STATUS_BY_CODE = {
    InvalidIdError.code: 400,
    InvalidFilterError.code: 400,
    InvalidTokenError.code: 400,
    InvalidPayloadError.code: 400,
    ItemNotFoundError.code: 404,
    FilterFingerprintMismatchError.code: 409,
    StatusLockedError.code: 409,
    ProjectFieldConflictError.code: 409,
    TokenExpiredError.code: 410,
}


def to_http_exception(exc: ActivityError) -> HTTPException:
    """Translate a domain error into the API's ``{code, message}`` detail."""
    detail = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, StatusLockedError) and exc.todo_status:
        detail["todoStatus"] = exc.todo_status
    return HTTPException(status_code=HTTP_STATUS_BY_CODE.get(exc.code, 500), detail=detail)
