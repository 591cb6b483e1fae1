from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for core failures surfaced to callers.

    Each subclass carries the HTTP status and the stable error code the API
    envelope reports:
    - unauthorized (401): missing/invalid/expired/revoked token, bad credentials
    - forbidden (403): authenticated but no declared policy satisfied
    - not_found (404): resource or identity absent
    - conflict (409): duplicate registration email
    - validation_error (400): semantically invalid input
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Semantically invalid input, e.g. a wrong current password (400)."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Messages are deliberately generic: callers must not learn whether the
    account exists, is inactive, or the password was wrong.
    """
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated (or anonymous) caller lacks permission (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource or identity not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. an email already registered (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
