"""
Error taxonomy shared by every chatsync component.

All failures surfaced to callers derive from ApiError, which carries the
normalized shape of the remote API's error envelope:
- kind: coarse class used for retry and propagation decisions
- code: wire-level code (ApiErrorCode)
- message, details, request_id, timestamp
"""

from __future__ import annotations

import secrets
import time
from datetime import datetime
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Coarse error classes."""

    VALIDATION = "validation"
    NETWORK = "network"
    AUTH = "auth"
    SERVER = "server"
    REQUEST = "request"
    CONFLICT = "conflict"
    PROTOCOL = "protocol"


class ApiErrorCode(str, Enum):
    """Error codes used by the remote API."""

    INVALID_REQUEST = "INVALID_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


class AuthErrorKind(str, Enum):
    """Reason an authentication exchange failed."""

    NETWORK = "network"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOKEN_EXPIRED = "token_expired"
    SERVER = "server"


def generate_request_id() -> str:
    """Generate a local request id for errors the server did not tag."""
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class ApiError(Exception):
    """Base class for all normalized errors."""

    kind: ErrorKind = ErrorKind.SERVER
    default_code: ApiErrorCode = ApiErrorCode.SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: ApiErrorCode | str | None = None,
        details: list[Any] | None = None,
        request_id: str | None = None,
        timestamp: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = _coerce_code(code) if code is not None else self.default_code
        self.details = list(details or [])
        self.request_id = request_id or generate_request_id()
        self.timestamp = timestamp or datetime.now().isoformat()
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Whether a retry policy may re-issue the failed operation."""
        return self.kind in (ErrorKind.NETWORK, ErrorKind.SERVER)

    @property
    def is_auth_failure(self) -> bool:
        return self.code in (ApiErrorCode.UNAUTHORIZED, ApiErrorCode.TOKEN_EXPIRED)

    def to_dict(self) -> dict[str, Any]:
        """Serialize in the remote API's error envelope shape."""
        code = self.code.value if isinstance(self.code, ApiErrorCode) else str(self.code)
        return {
            "kind": self.kind.value,
            "code": code,
            "message": self.message,
            "details": self.details,
            "requestId": self.request_id,
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!s}, message={self.message!r})"


class ValidationError(ApiError):
    """Local input validation failed; no network call was attempted."""

    kind = ErrorKind.VALIDATION
    default_code = ApiErrorCode.VALIDATION_ERROR


class NetworkError(ApiError):
    """Connectivity failure or timeout."""

    kind = ErrorKind.NETWORK
    default_code = ApiErrorCode.NETWORK_ERROR


class ServerError(ApiError):
    """5xx-class failure reported by the remote authority."""

    kind = ErrorKind.SERVER
    default_code = ApiErrorCode.SERVER_ERROR


class RequestError(ApiError):
    """4xx-class rejection other than authentication. Never retried."""

    kind = ErrorKind.REQUEST
    default_code = ApiErrorCode.INVALID_REQUEST


class AuthError(ApiError):
    """Authentication failed or the credential is no longer accepted."""

    kind = ErrorKind.AUTH
    default_code = ApiErrorCode.UNAUTHORIZED

    def __init__(
        self,
        message: str,
        *,
        auth_kind: AuthErrorKind = AuthErrorKind.INVALID_CREDENTIALS,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.auth_kind = auth_kind

    @property
    def requires_login(self) -> bool:
        """True when only a fresh login can recover."""
        return self.auth_kind in (AuthErrorKind.INVALID_CREDENTIALS, AuthErrorKind.TOKEN_EXPIRED)


class ConflictError(ApiError):
    """Data-level conflict that needs a resolution, not a retry."""

    kind = ErrorKind.CONFLICT
    default_code = ApiErrorCode.VALIDATION_ERROR


class ProtocolError(ApiError):
    """Malformed frame or response body."""

    kind = ErrorKind.PROTOCOL
    default_code = ApiErrorCode.INVALID_REQUEST


_STATUS_CODES: dict[int, ApiErrorCode] = {
    400: ApiErrorCode.INVALID_REQUEST,
    401: ApiErrorCode.UNAUTHORIZED,
    403: ApiErrorCode.FORBIDDEN,
    404: ApiErrorCode.NOT_FOUND,
    422: ApiErrorCode.VALIDATION_ERROR,
    429: ApiErrorCode.RATE_LIMITED,
    503: ApiErrorCode.SERVICE_UNAVAILABLE,
}

_DEFAULT_MESSAGES: dict[ApiErrorCode, str] = {
    ApiErrorCode.INVALID_REQUEST: "Malformed request",
    ApiErrorCode.VALIDATION_ERROR: "Request failed validation",
    ApiErrorCode.UNAUTHORIZED: "Unauthorized, please sign in again",
    ApiErrorCode.TOKEN_EXPIRED: "Session expired, please sign in again",
    ApiErrorCode.FORBIDDEN: "Access to this resource is forbidden",
    ApiErrorCode.NOT_FOUND: "Requested resource does not exist",
    ApiErrorCode.RATE_LIMITED: "Too many requests, try again later",
    ApiErrorCode.SERVER_ERROR: "Internal server error",
    ApiErrorCode.SERVICE_UNAVAILABLE: "Service temporarily unavailable",
    ApiErrorCode.NETWORK_ERROR: "Network connection failed",
    ApiErrorCode.TIMEOUT_ERROR: "Request timed out",
}


def _coerce_code(code: ApiErrorCode | str) -> ApiErrorCode | str:
    if isinstance(code, ApiErrorCode):
        return code
    try:
        return ApiErrorCode(code)
    except ValueError:
        return code


def error_from_code(
    code: ApiErrorCode | str,
    message: str | None = None,
    *,
    status_code: int | None = None,
    **kwargs: Any,
) -> ApiError:
    """Build the error subclass matching a wire-level error code."""
    code = _coerce_code(code)
    if message is None:
        message = _DEFAULT_MESSAGES.get(code, "Unknown error") if isinstance(code, ApiErrorCode) else "Unknown error"

    if code == ApiErrorCode.TOKEN_EXPIRED:
        return AuthError(message, auth_kind=AuthErrorKind.TOKEN_EXPIRED, code=code, status_code=status_code, **kwargs)
    if code == ApiErrorCode.UNAUTHORIZED:
        return AuthError(message, auth_kind=AuthErrorKind.INVALID_CREDENTIALS, code=code, status_code=status_code, **kwargs)
    if code in (ApiErrorCode.NETWORK_ERROR, ApiErrorCode.TIMEOUT_ERROR):
        return NetworkError(message, code=code, status_code=status_code, **kwargs)
    if code in (ApiErrorCode.SERVER_ERROR, ApiErrorCode.SERVICE_UNAVAILABLE):
        return ServerError(message, code=code, status_code=status_code, **kwargs)
    if code == ApiErrorCode.VALIDATION_ERROR:
        return RequestError(message, code=code, status_code=status_code, **kwargs)
    if isinstance(code, ApiErrorCode):
        return RequestError(message, code=code, status_code=status_code, **kwargs)
    # Unknown server code: classify by status when we have one
    if status_code is not None and status_code >= 500:
        return ServerError(message, code=code, status_code=status_code, **kwargs)
    if status_code is not None and status_code >= 400:
        return RequestError(message, code=code, status_code=status_code, **kwargs)
    return ServerError(message, code=code, status_code=status_code, **kwargs)


def error_from_status(status_code: int, message: str | None = None, **kwargs: Any) -> ApiError:
    """Build the error subclass for an HTTP status without an error envelope."""
    if status_code in _STATUS_CODES:
        code = _STATUS_CODES[status_code]
    elif status_code >= 500:
        code = ApiErrorCode.SERVER_ERROR
    else:
        code = ApiErrorCode.INVALID_REQUEST
    return error_from_code(code, message, status_code=status_code, **kwargs)


USER_MESSAGES: dict[str, str] = {
    ErrorKind.VALIDATION.value: "Please check the information you entered.",
    ErrorKind.NETWORK.value: "Network connection failed, please check your network settings.",
    ErrorKind.SERVER.value: "The server is busy, please try again later.",
    ErrorKind.REQUEST.value: "The request could not be completed.",
    ErrorKind.CONFLICT.value: "This item was changed elsewhere and needs your review.",
    ErrorKind.PROTOCOL.value: "Received an unexpected response from the server.",
    AuthErrorKind.INVALID_CREDENTIALS.value: "Sign-in failed, please check your email and password.",
    AuthErrorKind.TOKEN_EXPIRED.value: "Your session has expired, please sign in again.",
    AuthErrorKind.NETWORK.value: "Network connection failed, please check your network settings.",
    AuthErrorKind.SERVER.value: "The server is busy, please try again later.",
}


def user_message(error: BaseException) -> str:
    """Human-readable message for an error, keyed by its kind."""
    if isinstance(error, AuthError):
        return USER_MESSAGES[error.auth_kind.value]
    if isinstance(error, ValidationError):
        # Validation messages are already written for the user
        return error.message
    if isinstance(error, ApiError):
        return USER_MESSAGES[error.kind.value]
    return "An unexpected error occurred."
