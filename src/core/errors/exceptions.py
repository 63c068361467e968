"""
Exception types and error classification for the restore pipeline.

Provides:
- ErrorCategory enum for retry decisions
- Typed exception hierarchy for pipeline errors
- Error classification utilities
"""

import builtins
from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Retry policy is owned by whoever schedules the work; components only
    classify what went wrong.

    Categories:
        TRANSIENT: Temporary failures that may succeed on a later attempt
                   (e.g., network timeouts, 429/503 errors, local I/O hiccups)
        AUTH: Authentication failures requiring credential refresh
              (e.g., 401 errors, expired session tokens)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., 404, checksum mismatch, missing job secrets)
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error should trigger a retry."""
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.AUTH,
            ErrorCategory.UNKNOWN,
        )

    @property
    def should_refresh_auth(self) -> bool:
        """Whether this error should trigger auth refresh."""
        return self.category == ErrorCategory.AUTH

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthError(PipelineError):
    """Base class for authentication errors."""

    category = ErrorCategory.AUTH


class TokenExpiredError(AuthError):
    """Session token has expired, job secrets need to be refreshed."""

    pass


# =============================================================================
# Network/Connection Errors (Transient)
# =============================================================================


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class ConnectionError(TransientError):
    """Network connection failed (DNS, refused, reset)."""

    pass


class TimeoutError(TransientError):
    """Operation timed out."""

    pass


class ThrottlingError(TransientError):
    """Rate limited by the storage service (429/SlowDown) - should back off."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.retry_after = retry_after


class ServiceUnavailableError(TransientError):
    """Service temporarily unavailable (5xx)."""

    pass


# =============================================================================
# Permanent Errors (Don't Retry)
# =============================================================================


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class NotFoundError(PermanentError):
    """Resource not found (404)."""

    pass


class ForbiddenError(PermanentError):
    """Access denied (403) - permissions issue, not auth."""

    pass


class ConfigurationError(PermanentError):
    """Invalid configuration."""

    pass


# =============================================================================
# Restore Domain Errors
# =============================================================================


class RestoreJobFatalError(PermanentError):
    """
    The restore job is in a state that no retry can fix.

    Raised synchronously, e.g. when a job without secrets is authenticated.
    """

    pass


class CredentialsNotFoundError(PermanentError):
    """
    No active credentials for the job of a range.

    The job was never authenticated or its credentials were revoked, which
    usually means it has already reached a final status.
    """

    def __init__(self, job_id, cause: Optional[BaseException] = None):
        super().__init__(
            f"No credential available. The job might already have failed. jobId: {job_id}",
            cause=cause,
            context={"job_id": str(job_id)},
        )
        self.job_id = job_id


class ChecksumMismatchError(PermanentError):
    """Remote object does not match the expected checksum (412 on If-Match)."""

    pass


class StorageError(PipelineError):
    """Object storage request failed for a reason that could not be classified."""

    pass


class StagingError(TransientError):
    """Local filesystem failure while staging a downloaded object."""

    pass


# =============================================================================
# Error Classification Utilities
# =============================================================================


def is_retryable_error(exc: BaseException) -> bool:
    """Check if an exception should be retried by the caller's scheduler."""
    if isinstance(exc, PipelineError):
        return exc.is_retryable
    return classify_exception(exc) in (
        ErrorCategory.TRANSIENT,
        ErrorCategory.AUTH,
        ErrorCategory.UNKNOWN,
    )


def classify_http_status(status_code: int) -> ErrorCategory:
    """
    Classify HTTP status code into error category.

    Args:
        status_code: HTTP response status

    Returns:
        Appropriate ErrorCategory
    """
    if 200 <= status_code < 300:
        return ErrorCategory.UNKNOWN  # Not an error

    if status_code == 401:
        return ErrorCategory.AUTH

    if status_code == 429:
        return ErrorCategory.TRANSIENT  # Rate limited

    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT  # Client errors, won't fix with retry

    if status_code >= 500:
        return ErrorCategory.TRANSIENT  # Server errors, may recover

    return ErrorCategory.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception into error category.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    # Already classified
    if isinstance(exc, PipelineError):
        return exc.category

    # Socket and local disk failures; file paths must not hit the markers below
    if isinstance(exc, OSError):
        return ErrorCategory.TRANSIENT

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    # Connection errors
    connection_markers = (
        "connectionerror",
        "connection refused",
        "connection reset",
        "connection aborted",
        "could not connect",
        "endpointconnectionerror",
        "no route to host",
        "network unreachable",
        "name resolution",
        "dns",
        "socket",
        "broken pipe",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    # Timeout errors
    if "timeout" in exc_type or "timed out" in exc_str or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    # Auth errors
    auth_markers = (
        "401",
        "unauthorized",
        "expiredtoken",
        "token expired",
        "invalidaccesskeyid",
        "invalid token",
        "signaturedoesnotmatch",
    )
    if any(m in exc_type or m in exc_str for m in auth_markers):
        return ErrorCategory.AUTH

    # Throttling
    if "429" in exc_str or "slowdown" in exc_str or "throttl" in exc_str:
        return ErrorCategory.TRANSIENT

    # Server errors
    if "503" in exc_str or "502" in exc_str or "504" in exc_str or "500" in exc_str:
        return ErrorCategory.TRANSIENT

    # Permission errors (not auth - actual permissions)
    if "403" in exc_str or "forbidden" in exc_str or "access denied" in exc_str:
        return ErrorCategory.PERMANENT

    # Not found
    if "404" in exc_str or "not found" in exc_str or "nosuchkey" in exc_str:
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: BaseException,
    default_class: type = PipelineError,
    context: Optional[dict] = None,
) -> PipelineError:
    """
    Wrap a generic exception in appropriate PipelineError subclass.

    Args:
        exc: Exception to wrap
        default_class: Class to use if can't classify
        context: Additional context to include

    Returns:
        Appropriate PipelineError subclass instance
    """
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    exc_str = str(exc).lower()
    message = str(exc) or type(exc).__name__

    if category == ErrorCategory.AUTH:
        if "expired" in exc_str:
            return TokenExpiredError(message, cause=exc, context=context)
        return AuthError(message, cause=exc, context=context)

    if category == ErrorCategory.TRANSIENT:
        if isinstance(exc, OSError) and not _looks_like_network(exc):
            return StagingError(message, cause=exc, context=context)
        if isinstance(exc, builtins.TimeoutError) or "timeout" in exc_str or "timed out" in exc_str:
            return TimeoutError(message, cause=exc, context=context)
        if "429" in exc_str or "throttl" in exc_str or "slowdown" in exc_str:
            return ThrottlingError(message, cause=exc, context=context)
        if "503" in exc_str:
            return ServiceUnavailableError(message, cause=exc, context=context)
        return ConnectionError(message, cause=exc, context=context)

    if category == ErrorCategory.PERMANENT:
        if "404" in exc_str or "not found" in exc_str or "nosuchkey" in exc_str:
            return NotFoundError(message, cause=exc, context=context)
        if "403" in exc_str or "forbidden" in exc_str:
            return ForbiddenError(message, cause=exc, context=context)
        return PermanentError(message, cause=exc, context=context)

    return default_class(message, cause=exc, context=context)


def _looks_like_network(exc: OSError) -> bool:
    # builtins.ConnectionError and socket timeouts are OSError subclasses too
    return isinstance(exc, (builtins.ConnectionError, builtins.TimeoutError))
