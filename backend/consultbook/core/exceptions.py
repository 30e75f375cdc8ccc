# backend/consultbook/core/exceptions.py
"""
Domain-specific exceptions for the booking and payment core.

Each exception carries a machine-readable ``code`` and converts itself to an
HTTPException so routes and the global handlers render a consistent
problem+json body.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


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


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class UnauthorizedException(DomainException):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""


# Booking and payment exceptions


class SlotUnavailableException(ConflictException):
    """The requested slot was claimed by someone else or is no longer offered."""

    def __init__(self, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message="This time is no longer available, please choose another",
            code="SLOT_UNAVAILABLE",
            details=details or {},
        )


class ReservationExpiredException(DomainException):
    """The reservation hold lapsed; the booking flow has to start over."""

    status_code = status.HTTP_410_GONE

    def __init__(self, session_id: str) -> None:
        super().__init__(
            message="Your reservation has expired, please choose a time again",
            code="RESERVATION_EXPIRED",
            details={"session_id": session_id},
        )


class InvalidStateTransitionException(ConflictException):
    def __init__(self, current: str, target: str, *, message: Optional[str] = None) -> None:
        super().__init__(
            message=message or f"Cannot move session from {current} to {target}",
            code="INVALID_STATE_TRANSITION",
            details={"current_status": current, "target_status": target},
        )


class GatewayTimeoutException(ServiceException):
    """
    A remote call exceeded its deadline.

    Retriable by the caller for order creation. Verification never retries it;
    the webhook or the reconciliation job settles the payment instead.
    """

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    retriable = True

    def __init__(self, operation: str, deadline_seconds: float, message: Optional[str] = None) -> None:
        self.operation = operation
        self.deadline_seconds = deadline_seconds
        super().__init__(
            message=message or f"Payment provider did not respond in time ({operation})",
            code="GATEWAY_TIMEOUT",
            details={
                "operation": operation,
                "deadline_seconds": deadline_seconds,
                "retriable": True,
            },
        )


class GatewayException(ServiceException):
    """The remote provider answered and rejected the request."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        provider_error: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.operation = operation
        self.provider_status = status_code
        super().__init__(
            message=message,
            code="GATEWAY_ERROR",
            details={
                "operation": operation,
                "provider_status": status_code,
                "provider_error": provider_error or {},
            },
        )


class InvalidSignatureException(DomainException):
    """Signature did not match; never retried and never applied."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, source: str) -> None:
        super().__init__(
            message="Payment signature verification failed",
            code="INVALID_SIGNATURE",
            details={"source": source},
        )


class RefundFailedException(ServiceException):
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, session_id: str, reason: str) -> None:
        super().__init__(
            message="Refund could not be processed; an operator has been notified",
            code="REFUND_FAILED",
            details={"session_id": session_id, "reason": reason},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as connection issues,
    query failures, or constraint violations that the caller did not
    anticipate.
    """
