# backend/app/core/exceptions.py
"""
Domain-specific exceptions for the booking core.

Every failure a caller can act on is a DomainException carrying the entity id
and, for status conflicts, the expected and actual status. The API layer turns
them into HTTP responses through ``to_http_exception``.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Failure a caller can act on; carries a stable code and structured details."""

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

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details}

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_dict())


class ValidationException(DomainException):
    """Raised when command input fails business validation."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a booking, record or authorization id does not resolve."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, entity: str, entity_id: Optional[str]) -> None:
        super().__init__(
            message=f"{entity} {entity_id} not found",
            code="NOT_FOUND",
            details={"entity": entity, "id": entity_id},
        )


class ConflictException(DomainException):
    """Raised when the stored state conflicts with the requested change."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when input is well formed but a lifecycle rule rejects it."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when the caller's role or ownership does not allow the action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when persistence fails underneath a command."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


# Lifecycle exceptions


class InvalidTransitionException(ConflictException):
    """
    Raised when a status write is not allowed.

    Either the transition is not in the machine's table, or the stored status no
    longer equals the status the caller observed (a concurrent writer got there
    first). Callers re-fetch and retry, or treat the change as already applied.
    """

    def __init__(
        self,
        entity: str,
        entity_id: Optional[str],
        *,
        expected: Optional[str],
        actual: Optional[str],
        target: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=(
                f"Cannot move {entity} {entity_id} to {target}: "
                f"expected status {expected}, found {actual}"
            ),
            code="INVALID_TRANSITION",
            details={
                "entity": entity,
                "id": entity_id,
                "expected": expected,
                "actual": actual,
                "target": target,
            },
        )


class BookingLockedException(ConflictException):
    """Raised when another actor currently holds the booking group mutex."""

    def __init__(self, booking_group_id: str) -> None:
        super().__init__(
            message="Booking is being modified by another request; retry shortly",
            code="BOOKING_LOCKED",
            details={"booking_group_id": booking_group_id, "retryable": True},
        )


class PolicyViolationException(BusinessRuleException):
    """Raised when a policy rule (cancellation window, minimum duration) rejects a command."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, code=code or "POLICY_VIOLATION", details=details)


class AlreadyStartedException(PolicyViolationException):
    """Raised when a cancellation is requested after the booking started."""

    def __init__(self, entity_id: str, hours_until_start: float) -> None:
        super().__init__(
            message="Booking has already started and can no longer be cancelled",
            code="ALREADY_STARTED",
            details={"id": entity_id, "hours_until_start": round(hours_until_start, 2)},
        )


class BelowMinimumException(PolicyViolationException):
    """Raised when a requested extension is shorter than the listing minimum."""

    def __init__(self, requested_days: int, minimum_days: int) -> None:
        super().__init__(
            message=f"Extensions must cover at least {minimum_days} day(s)",
            code="BELOW_MINIMUM",
            details={"requested_days": requested_days, "minimum_days": minimum_days},
        )


class PaymentFailureException(DomainException):
    """Raised when the payment processor rejects or keeps failing an operation."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        authorization_id: Optional[str] = None,
        retryable: bool = False,
        attempts: int = 1,
        processor_code: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=message,
            code="PAYMENT_FAILURE",
            details={
                "operation": operation,
                "authorization_id": authorization_id,
                "retryable": retryable,
                "attempts": attempts,
                "processor_code": processor_code,
            },
        )
        self.operation = operation
        self.retryable = retryable
        self.attempts = attempts


class InvariantBreachException(ServiceException):
    """Raised when a stored state violates a lifecycle invariant; the operation is aborted."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, code="INVARIANT_BREACH", details=details)


class RepositoryException(Exception):
    """Data access failure; services translate it into ServiceException."""
