from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
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
    """Request is malformed or out of policy (400)."""
    status_code = 400
    error_code = "validation_error"


class InvitationRejected(ValidationError):
    """Invitation token cannot admit a registration (400).

    ``reason`` is one of ``invalid``, ``revoked``, ``exhausted``, ``expired``
    or ``email_mismatch`` and is echoed in ``detail``.
    """

    MESSAGES = {
        "invalid": "Invalid invitation token",
        "revoked": "This invitation token has been revoked",
        "exhausted": "This invitation token has reached its maximum number of uses",
        "expired": "This invitation token has expired",
        "email_mismatch": "This invitation token is for a different email address",
    }

    def __init__(self, reason: str) -> None:
        if reason not in self.MESSAGES:
            raise ValueError(f"unknown invitation rejection reason: {reason}")
        super().__init__(self.MESSAGES[reason], detail={"reason": reason})
        self.reason = reason


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate username (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvitationRejected",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
