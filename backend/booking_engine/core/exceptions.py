# backend/booking_engine/core/exceptions.py
"""
Domain-specific exceptions for the booking engine.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
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
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class UnauthorizedException(DomainException):
    """Raised when the caller is not identified."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    """Raised when the caller is not the right actor for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class BookingConflictException(ConflictException):
    """
    Raised when a requested interval overlaps an active booking.

    ``details`` always names the slot (provider, date, start, end) so clients
    can re-query availability instead of retrying the same request.
    """

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This time slot conflicts with an existing booking",
            code="booking_conflict",
            details=details or {},
        )


class InvalidBookingStateException(ValidationException):
    """Raised when a transition is attempted from a state that does not allow it."""

    def __init__(
        self, booking_id: str, current_status: str, action: str, expected: str = "pending"
    ):
        super().__init__(
            message=f"Booking is {current_status}, not {expected}",
            code="invalid_state",
            details={"booking_id": booking_id, "status": current_status, "action": action},
        )


class ContactProviderException(ValidationException):
    """Raised when a customer tries to cancel a booking the provider already committed to."""

    def __init__(self, booking_id: str, current_status: str):
        super().__init__(
            message="Cannot cancel confirmed booking. Please contact the provider.",
            code="contact_provider",
            details={"booking_id": booking_id, "status": current_status},
        )


class PaymentExpiredException(ValidationException):
    """Raised when the payment authorization lapsed before capture."""

    def __init__(self, booking_id: Optional[str] = None):
        super().__init__(
            message=(
                "Payment authorization has expired. "
                "Customer must submit a new booking request to re-confirm payment."
            ),
            code="payment_expired",
            details={"booking_id": booking_id} if booking_id else {},
        )


class PaymentProviderException(DomainException):
    """Raised when the payment processor rejects a call for reasons outside this system."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        provider_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        if provider_code:
            merged["provider_code"] = provider_code
        super().__init__(message=message, code="payment_provider_error", details=merged)
        self.provider_code = provider_code


class MetadataMismatchException(ValidationException):
    """Raised when a webhook payload disagrees with the stored booking."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="metadata_mismatch", details=details)


class WebhookSignatureException(ValidationException):
    """Raised when a webhook payload cannot be authenticated or parsed."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message=message, code="invalid_signature")


class PaymentConfigurationError(RuntimeError):
    """Raised at startup when payment key material is missing or inconsistent."""


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues or query failures.
    """
