"""Error codes and exception types for KeyRelay."""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Normalized error codes for KeyRelay.

    All error codes must be one of these values.
    Used in responses, logs, and metrics.
    """
    # Client errors (4xx)
    UNAUTHORIZED = "UNAUTHORIZED"
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    LIMIT_REACHED = "LIMIT_REACHED"

    # Pool exhaustion
    NO_CREDENTIAL_AVAILABLE = "NO_CREDENTIAL_AVAILABLE"  # all usable credentials cooling down
    NO_CREDENTIALS_CONFIGURED = "NO_CREDENTIALS_CONFIGURED"  # no active credential at all
    NO_MODEL_AVAILABLE = "NO_MODEL_AVAILABLE"

    # Upstream transport
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    UPSTREAM_UNREACHABLE = "UPSTREAM_UNREACHABLE"

    # Internal errors
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @classmethod
    def from_http_status(cls, status_code: int) -> "ErrorCode":
        """Map HTTP status code to error code."""
        if status_code == 504:
            return cls.UPSTREAM_TIMEOUT
        elif status_code == 502:
            return cls.UPSTREAM_UNREACHABLE
        elif status_code == 503:
            return cls.NO_MODEL_AVAILABLE
        elif status_code >= 500:
            return cls.INTERNAL_ERROR
        elif status_code in (401, 403):
            return cls.UNAUTHORIZED
        elif status_code == 404:
            return cls.NOT_FOUND
        elif status_code == 409:
            return cls.CONFLICT
        elif status_code == 429:
            return cls.NO_CREDENTIAL_AVAILABLE
        elif status_code >= 400:
            return cls.BAD_REQUEST
        else:
            return cls.INTERNAL_ERROR


def error_body(code: ErrorCode, message: str, error_type: Optional[str] = None) -> Dict[str, Any]:
    """Build the JSON error payload shared by the proxy and admin routes."""
    return {
        "error": {
            "type": error_type or _default_type(code),
            "code": code.value,
            "message": message,
        }
    }


def _default_type(code: ErrorCode) -> str:
    if code in (ErrorCode.UPSTREAM_TIMEOUT, ErrorCode.UPSTREAM_UNREACHABLE):
        return "upstream_error"
    if code in (
        ErrorCode.NO_CREDENTIAL_AVAILABLE,
        ErrorCode.NO_CREDENTIALS_CONFIGURED,
        ErrorCode.NO_MODEL_AVAILABLE,
    ):
        return "pool_exhausted"
    if code == ErrorCode.INTERNAL_ERROR:
        return "internal_error"
    return "client_error"


class KeyRelayError(Exception):
    """Base class for KeyRelay errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500


class StoreError(KeyRelayError):
    """Raised when the durable store cannot complete an operation."""


class UpdateExhaustedError(KeyRelayError):
    """Raised when a compare-and-swap update keeps losing to concurrent writers."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"Update of {key} failed after {attempts} attempts")
        self.key = key
        self.attempts = attempts


class UpstreamTimeoutError(KeyRelayError):
    """Upstream did not answer within the request timeout."""

    code = ErrorCode.UPSTREAM_TIMEOUT
    status_code = 504


class UpstreamUnavailableError(KeyRelayError):
    """Upstream could not be reached (connection refused, DNS, protocol error)."""

    code = ErrorCode.UPSTREAM_UNREACHABLE
    status_code = 502


class DuplicateKeyError(KeyRelayError):
    """Credential secret already present in the pool."""

    code = ErrorCode.CONFLICT
    status_code = 409


class NotFoundError(KeyRelayError):
    """Referenced credential or proxy key does not exist."""

    code = ErrorCode.NOT_FOUND
    status_code = 404


class NoActiveCredentialError(KeyRelayError):
    """An admin probe needs an active credential and there is none."""

    code = ErrorCode.NO_CREDENTIALS_CONFIGURED
    status_code = 400


class LimitReachedError(KeyRelayError):
    """A capped collection is already full."""

    code = ErrorCode.LIMIT_REACHED
    status_code = 400
