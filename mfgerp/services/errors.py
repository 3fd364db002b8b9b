from __future__ import annotations

from typing import Any, Optional


class DomainError(Exception):
    """
    Base class for expected, user-actionable failures raised by services.

    The API layer renders these in the standard error envelope using
    `error_type` and `status_code`; nothing here is retried automatically.
    """

    error_type = "domain_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(DomainError):
    """Referenced entity absent or outside the caller's tenant."""
    error_type = "not_found"
    status_code = 404


class InvalidReferenceError(DomainError):
    """Cross-tenant or dangling foreign reference."""
    error_type = "invalid_reference"
    status_code = 422


class InvalidQuantityError(DomainError):
    """Non-positive or malformed quantity."""
    error_type = "invalid_quantity"
    status_code = 422


class InsufficientStockError(DomainError):
    """Consumption would drive stock negative without an override."""
    error_type = "insufficient_stock"
    status_code = 409


class InvalidTransitionError(DomainError):
    """Illegal state change attempted."""
    error_type = "invalid_transition"
    status_code = 409


class CyclicBomError(DomainError):
    """BOM graph reaches its own produced item."""
    error_type = "cyclic_bom"
    status_code = 422


class InvalidFilterError(DomainError):
    """Query filter outside the allow-list of filterable fields."""
    error_type = "invalid_filter"
    status_code = 422


class ConflictError(DomainError):
    """Concurrent modification detected."""
    error_type = "conflict"
    status_code = 409


class InvalidScheduleError(DomainError):
    """Planned window ends before it starts."""
    error_type = "invalid_schedule"
    status_code = 422
