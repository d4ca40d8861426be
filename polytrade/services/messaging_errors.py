"""
WhatsApp delivery error taxonomy.

Every failure on the delivery path ends up as one of these, so callers can
decide between retrying, dead-lettering and surfacing the error.
"""
import enum
from datetime import datetime

import httpx


class ErrorType(str, enum.Enum):
    """Classified failure types."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_ERROR_TYPES = {
    ErrorType.RATE_LIMIT,
    ErrorType.NETWORK_ERROR,
    ErrorType.SERVICE_UNAVAILABLE,
}


class MessagingError(Exception):
    """Base class for classified WhatsApp delivery errors."""

    error_type = ErrorType.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        retry_after: int | None = None,
        http_status: int | None = None,
        deal_id: str | None = None,
        recipient: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after
        self.http_status = http_status
        self.deal_id = deal_id
        self.recipient = recipient

    @property
    def type(self) -> ErrorType:
        return self.error_type

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_ERROR_TYPES

    def to_dict(self) -> dict:
        return {
            "type": self.error_type.value,
            "message": self.message,
            "retry_after": self.retry_after,
            "http_status": self.http_status,
            "deal_id": self.deal_id,
            "recipient": self.recipient,
        }


class MessageValidationError(MessagingError):
    error_type = ErrorType.VALIDATION_ERROR

    def __init__(self, message: str, deal_id: str | None = None, recipient: str | None = None):
        super().__init__(message, http_status=400, deal_id=deal_id, recipient=recipient)


class AuthError(MessagingError):
    error_type = ErrorType.AUTH_ERROR

    def __init__(self, message: str = "Authentication failed", deal_id: str | None = None):
        super().__init__(message, http_status=401, deal_id=deal_id)


class RateLimitError(MessagingError):
    error_type = ErrorType.RATE_LIMIT

    def __init__(self, retry_after: int = 60, deal_id: str | None = None, recipient: str | None = None):
        super().__init__(
            f"Rate limit exceeded, retry after {retry_after}s",
            retry_after=retry_after,
            http_status=429,
            deal_id=deal_id,
            recipient=recipient,
        )


class NetworkError(MessagingError):
    error_type = ErrorType.NETWORK_ERROR

    def __init__(self, message: str = "Network error", http_status: int | None = None, deal_id: str | None = None):
        super().__init__(message, http_status=http_status, deal_id=deal_id)


class ServiceUnavailableError(MessagingError):
    """Raised in place of calling the API while the circuit breaker is open."""

    error_type = ErrorType.SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str = "Service temporarily unavailable (circuit breaker open)",
        next_attempt_at: datetime | None = None,
        deal_id: str | None = None,
        recipient: str | None = None,
    ):
        super().__init__(message, http_status=503, deal_id=deal_id, recipient=recipient)
        self.next_attempt_at = next_attempt_at

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["next_attempt_at"] = self.next_attempt_at.isoformat() if self.next_attempt_at else None
        return data


class UnknownMessagingError(MessagingError):
    error_type = ErrorType.UNKNOWN_ERROR


class CircuitBreakerOpenError(Exception):
    """The circuit breaker rejected the call without running it."""

    def __init__(self, message: str = "Circuit breaker is open", next_attempt_at: datetime | None = None):
        super().__init__(message)
        self.next_attempt_at = next_attempt_at


def error_from_response(response: httpx.Response) -> MessagingError:
    """Classify a non-2xx WhatsApp API response."""
    status_code = response.status_code
    error_text = response.text

    if status_code == 401:
        return AuthError("Invalid or expired access token")
    if status_code == 429:
        try:
            retry_after = int(response.headers.get("Retry-After", "60"))
        except ValueError:
            retry_after = 60
        return RateLimitError(retry_after)
    if status_code == 400:
        return MessageValidationError(f"Bad request: {error_text}")
    if 500 <= status_code < 600:
        return NetworkError(f"Server error: {status_code} {error_text}", http_status=status_code)
    return UnknownMessagingError(f"API error: {status_code} {error_text}", http_status=status_code)


def classify_error(error: BaseException, deal_id: str | None = None, recipient: str | None = None) -> MessagingError:
    """Turn any exception raised on the delivery path into a MessagingError."""
    if isinstance(error, MessagingError):
        if error.deal_id is None:
            error.deal_id = deal_id
        if error.recipient is None:
            error.recipient = recipient
        return error

    if isinstance(error, CircuitBreakerOpenError):
        return ServiceUnavailableError(
            next_attempt_at=error.next_attempt_at,
            deal_id=deal_id,
            recipient=recipient,
        )

    if isinstance(error, (httpx.ConnectError, httpx.TimeoutException)):
        network_error = NetworkError("Cannot reach WhatsApp API", deal_id=deal_id)
        network_error.recipient = recipient
        return network_error

    return UnknownMessagingError(
        str(error) or "Unknown WhatsApp error",
        deal_id=deal_id,
        recipient=recipient,
    )
