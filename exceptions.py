"""
Domain exceptions for the booking service.

Services raise these; the API layer turns them into HTTP responses through
``to_http_exception``. Validation and authorization errors are terminal for the
request. Storage and payment errors are surfaced as-is, nothing is retried.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when request data breaks a business rule (bad range, bad window)."""

    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedException(DomainException):
    """Raised when the caller cannot be identified."""

    status_code = status.HTTP_401_UNAUTHORIZED


class PaymentException(DomainException):
    """Raised when the payment provider fails or reports an unpaid intent."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED


class ForbiddenException(DomainException):
    """Raised when the actor has no rights over the entity."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class NotBookableException(ConflictException):
    """Raised when a facility exists but is not approved for booking."""


class InvalidTransitionException(ConflictException):
    """Raised when a booking status change is not allowed from its current state."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move booking from '{current}' to '{target}'",
            details={"current_status": current, "target_status": target},
        )


class StorageException(DomainException):
    """Raised when the backing store rejects or fails a write."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AdvisorUnavailable(Exception):
    """The AI advisor gave no usable answer. Public advisor methods return None instead."""
