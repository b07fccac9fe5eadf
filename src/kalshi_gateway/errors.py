"""Structured error hierarchy for kalshi_gateway.

All gateway errors inherit from KalshiError, enabling uniform catch-all
handling while allowing granular recovery for specific failure modes.
Each error carries an ErrorKind tag and a ``retry_safe`` flag so strategy
code can tell whether resubmitting could duplicate a trade.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Tag identifying the failure class of a KalshiError."""
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    SIGNING = "signing"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    INVALID_REQUEST = "invalid_request"
    NOT_CANCELABLE = "not_cancelable"


class KalshiError(Exception):
    """Base exception for all Kalshi gateway errors."""

    kind: Optional[ErrorKind] = None
    retry_safe: bool = False

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class ConfigurationError(KalshiError):
    """Missing or invalid configuration. Raised before any network call."""
    kind = ErrorKind.CONFIGURATION


class SigningError(KalshiError):
    """Key material is malformed or the signing primitive failed.

    Fatal: no valid request can be produced without a working signer.
    """
    kind = ErrorKind.SIGNING


class AuthenticationError(KalshiError):
    """Signature rejected or key revoked (401/403). Never retried."""
    kind = ErrorKind.AUTHENTICATION


class RateLimitedError(KalshiError):
    """Rate limit exceeded (429)."""
    kind = ErrorKind.RATE_LIMITED
    retry_safe = True

    def __init__(
        self,
        message: str,
        retry_after: float,
        status_code: int = 429,
        response_body: str = "",
    ):
        super().__init__(message, status_code=status_code, response_body=response_body)
        self.retry_after = retry_after


class TransientError(KalshiError):
    """5xx response or transport failure (timeout, connection reset).

    For a mutating request the remote outcome is unknown; reconcile with a
    status read before resubmitting. The dispatcher sets ``retry_safe`` on
    instances raised for idempotent reads.
    """
    kind = ErrorKind.TRANSIENT


class InvalidRequestError(KalshiError):
    """Request rejected by validation (4xx other than 401/403/429)."""
    kind = ErrorKind.INVALID_REQUEST

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        response_body: str = "",
        error_code: str = "",
    ):
        super().__init__(message, status_code=status_code, response_body=response_body)
        self.error_code = error_code


class NotFoundError(InvalidRequestError):
    """Resource not found (404)."""
    pass


class OrderValidationError(InvalidRequestError):
    """Order failed local validation. No request was sent."""
    pass


class NotCancelableError(KalshiError):
    """Order is already cancelled, filled, or otherwise terminal.

    Callers can treat this as a terminal no-op.
    """
    kind = ErrorKind.NOT_CANCELABLE
