"""Error taxonomy for the token metering and plan subsystem.

These exceptions never leave the service layer: TokenService and PlanService
catch them at their public boundary and return a ``ServiceFailure`` value.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Category of a failed operation."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    BACKEND_REJECTED = "backend_rejected"
    TRANSPORT = "transport"


class TokenServiceError(Exception):
    """Base class for all subsystem errors."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TokenServiceError):
    """Malformed caller input. Detected locally, never sent to the backend."""

    kind = ErrorKind.VALIDATION


class AuthenticationError(TokenServiceError):
    """Caller identity does not match the user being acted on."""

    kind = ErrorKind.AUTHENTICATION

    def __init__(self, message: str = "Please log in again") -> None:
        super().__init__(message)


class RateLimitExceeded(TokenServiceError):
    """Local per-user throttle tripped."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        *,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class BackendRejected(TokenServiceError):
    """The accounting backend declined the operation (e.g. insufficient tokens)."""

    kind = ErrorKind.BACKEND_REJECTED

    def __init__(
        self,
        message: str,
        *,
        tokens_needed: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.tokens_needed = tokens_needed
        self.code = code


class ProfileNotFound(BackendRejected):
    """The backend has no user_profiles row for the user yet."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No user profile found for {user_id}", code="PGRST116")
        self.user_id = user_id


class TransportError(TokenServiceError):
    """Network, auth, or availability failure talking to the backend."""

    kind = ErrorKind.TRANSPORT
