"""
Custom exceptions for the sync engine with structured error context.

This module provides the exception hierarchy used across the fetcher,
materializer, stage executor and orphan reconciler. Each exception carries
context information for debugging and for the status endpoint, which shows
the last error class and whether it is retryable.

Exception Hierarchy:
    SyncException (base)
    ├── FetchFailed
    │   ├── NetworkError (retryable)
    │   ├── AuthenticationError
    │   ├── UpstreamRejected
    │   └── ResourceNotFoundError
    ├── Throttled (retryable)
    ├── MaterializeFailed
    ├── DatabaseError (retryable)
    ├── ReconciliationError
    │   ├── ReconciliationPartialFailure
    │   └── ReconciliationNotAllowed
    ├── SessionError
    │   ├── LockContention
    │   ├── StaleLockReleased
    │   ├── InvalidStageTransition
    │   └── SessionNotFound
    ├── UnknownTenant
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (tenant, stage, timestamp, etc.)
        original_exception: The original exception that was caught (if any)
        retryable: Whether the next invocation may simply try again
    """

    retryable = False

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for errors the next invocation should retry.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (local bucket or HTTP 429)
    - Service unavailable (HTTP 5xx)
    - Temporary database failures while writing a page
    """

    retryable = True

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(SyncException):
    """
    Mixin for errors that need operator action.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403), e.g. a revoked token
    - Upstream rejecting the request (other 4xx, success=false)
    """

    retryable = False


# ============================================================================
# Fetch Errors
# ============================================================================

class FetchFailed(SyncException):
    """
    Exception raised when a page cannot be read from the upstream API.

    Context should include:
        - tenant_key: Tenant the request was made for
        - api_url: The endpoint that failed
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of in-request retries attempted
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retryable: Optional[bool] = None
    ):
        super().__init__(message, context, original_exception)
        if retryable is not None:
            self.retryable = retryable


class NetworkError(RetryableError, FetchFailed):
    """Timeouts, connection errors and 5xx responses that outlived retries."""
    pass


class AuthenticationError(NonRetryableError, FetchFailed):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class UpstreamRejected(NonRetryableError, FetchFailed):
    """Upstream refused the request (other 4xx, or success=false in the body)."""
    pass


class ResourceNotFoundError(NonRetryableError, FetchFailed):
    """Resource not found (HTTP 404); for a single case this means deleted upstream."""
    pass


class Throttled(RetryableError):
    """
    The tenant's rate budget is exhausted.

    The executor pauses and tries again on the next invocation instead of
    sleeping inside the current one.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds until a token is available
        if retry_after:
            self.context["retry_after"] = retry_after


# ============================================================================
# Materialization / Persistence Errors
# ============================================================================

class MaterializeFailed(SyncException):
    """
    Exception raised when one upstream record cannot be materialized.

    Logged and counted by the executor; never aborts the page.

    Context should include:
        - entity_type: Type of the record
        - remote_id: Upstream identifier of the record
        - field_errors: Validation errors (if applicable)
    """
    pass


class DatabaseError(RetryableError):
    """
    Exception raised when writing a page fails at the database level.

    Context should include:
        - operation: Operation that failed
        - table_name: Name of the table (if known)
    """
    pass


# ============================================================================
# Reconciliation Errors
# ============================================================================

class ReconciliationError(SyncException):
    """Base exception for orphan reconciliation failures."""
    pass


class ReconciliationPartialFailure(ReconciliationError):
    """
    Deleting one orphan failed; the entry stays pending_deletion.

    Context should include:
        - entity_type: Type of the orphan
        - local_id: Local entity id
    """
    pass


class ReconciliationNotAllowed(ReconciliationError):
    """
    Reconciliation was requested for a session that cannot vouch for the
    tenant's current upstream state (incomplete, failed or superseded).
    """
    pass


# ============================================================================
# Session Errors
# ============================================================================

class SessionError(SyncException):
    """Base exception for session coordination failures."""
    pass


class LockContention(SessionError):
    """Another session holds the tenant lock; retry later."""
    pass


class StaleLockReleased(SessionError):
    """
    A lock whose heartbeat expired was force-released.

    Warning-level: recorded on the abandoned session and logged, never raised
    to callers.
    """
    pass


class InvalidStageTransition(SessionError):
    """
    Exception raised for a stage change the state machine does not allow.

    Context should include:
        - session_token: Session being advanced
        - from_stage / to_stage: Requested transition
    """
    pass


class SessionNotFound(SessionError):
    """No session exists for the given token."""
    pass


class UnknownTenant(SyncException):
    """The tenant key does not match any configured tenant."""
    pass
