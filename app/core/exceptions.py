"""
Custom application exceptions.
"""

from typing import Optional

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    def __init__(self, detail: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR):
        super().__init__(status_code=status_code, detail=detail)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(detail=detail, status_code=status.HTTP_404_NOT_FOUND)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(detail=detail, status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, detail: str = "Forbidden"):
        super().__init__(detail=detail, status_code=status.HTTP_403_FORBIDDEN)


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, detail: str = "Bad request"):
        super().__init__(detail=detail, status_code=status.HTTP_400_BAD_REQUEST)


class ConflictException(AppException):
    """Record with the same id already exists."""

    def __init__(self, detail: str = "Conflict"):
        super().__init__(detail=detail, status_code=status.HTTP_409_CONFLICT)


class InsufficientCreditsException(AppException):
    """User is over quota for the current period."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            detail=(
                f"Not enough credits. Required: {required}, Available: {available}. "
                "Upgrade your plan for more credits."
            ),
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
        )


class ServiceUnavailableException(AppException):
    """A backing service (broker, storage) is unavailable."""

    def __init__(self, detail: str = "Service unavailable"):
        super().__init__(detail=detail, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


# Worker-side signals (never surfaced over HTTP)

class StaleStateError(Exception):
    """Compare-and-swap lost a race: the record is no longer in the expected state."""

    def __init__(self, job_id: str, expected: str, actual: Optional[str] = None):
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Job {job_id} is not {expected} (current: {actual})")


class TransientUpstreamError(Exception):
    """External call timed out or returned 5xx; may be retried within a delivery."""


class PermanentFailureError(Exception):
    """Malformed input or unrecoverable upstream rejection."""


class LedgerContentionError(Exception):
    """Optimistic concurrency retries on a ledger entry were exhausted."""
