"""
Error taxonomy for the provisioning pipeline.

Every error carries a stable ``kind`` (used in API bodies and logs), an HTTP
status for the edge, and a user-facing message. Infrastructure failures keep
their diagnostic text in ``detail`` and never show it to the end user.
"""

from __future__ import annotations

from typing import Any


class ProvisioningError(Exception):
    kind = "internal"
    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        return self.message


class ValidationError(ProvisioningError):
    """Malformed or missing input. Never touches state."""

    kind = "validation"
    status_code = 422
    default_message = "Invalid input."


class NotFoundError(ProvisioningError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found."


class InvalidStateError(ProvisioningError):
    """The operation is not legal from the record's current state."""

    kind = "invalid_state"
    status_code = 409
    default_message = "This operation is not allowed right now."

    def __init__(self, message: str | None = None, *,
                 current: str | None = None, **context: Any) -> None:
        self.current = current
        super().__init__(message, current=current, **context)


class ConflictError(ProvisioningError):
    """Lost a race on an atomic conditional transition."""

    kind = "conflict"
    status_code = 409
    default_message = "This request conflicted with another one."


class CapacityError(ProvisioningError):
    """Code space exhausted after bounded retries. Operator-visible."""

    kind = "capacity"
    status_code = 503
    default_message = "Service temporarily unavailable. Please try again later."

    @property
    def user_message(self) -> str:
        return self.default_message


class ExternalServiceError(ProvisioningError):
    """Notification dispatch failure. Always non-fatal."""

    kind = "external_service"
    status_code = 502
    default_message = "External service unavailable."


class PersistenceError(ProvisioningError):
    """A unit of work failed and was rolled back. Safe to retry."""

    kind = "persistence"
    status_code = 503
    default_message = "Temporary failure. Please try again."

    def __init__(self, detail: str | None = None, **context: Any) -> None:
        self.detail = detail
        super().__init__(None, **context)


__all__ = [
    "ProvisioningError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "ConflictError",
    "CapacityError",
    "ExternalServiceError",
    "PersistenceError",
]
