from __future__ import annotations

from typing import Any, Optional


class CrmError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "server_error"
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, *, details: Optional[Any] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details


class Unauthenticated(CrmError):
    status_code = 401
    code = "auth_required"
    default_message = "Authentication required"


class Forbidden(CrmError):
    # Never carries the name of the missing permission.
    status_code = 403
    code = "forbidden"
    default_message = "You are not allowed to perform this action"


class NotFound(CrmError):
    status_code = 404
    code = "not_found"
    default_message = "Record not found"


class ConfigurationError(CrmError):
    status_code = 500
    code = "server_error"
    default_message = "Something went wrong"


class ValidationError(CrmError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class Conflict(CrmError):
    status_code = 409
    code = "conflict"
    default_message = "Record already exists"
