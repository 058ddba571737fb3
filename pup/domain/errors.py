"""
Error taxonomy shared by every component of the context subsystem.

ValidationError     malformed input, never retried
TransientRemoteError rate-limit or server-side failure, retried with backoff
RemoteCallFailed    terminal outcome of a wrapped remote call
CircuitOpenError    breaker is protecting a degraded dependency, fail fast
StorageError        datastore or cache substrate failure
"""

from typing import Optional


class PupError(Exception):
    """Base class for all domain errors"""


class ValidationError(PupError, ValueError):
    """Input rejected before any remote work was attempted"""


class ParseError(ValidationError):
    """Structured model output could not be converted into a typed record"""

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class TransientRemoteError(PupError):
    """Remote failure that is worth retrying (rate limit, 5xx)"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteCallFailed(PupError):
    """A wrapped remote call failed after all permitted attempts"""

    def __init__(self, operation_name: str, transient: bool, attempts: int, cause: BaseException):
        super().__init__(
            f"{operation_name} failed after {attempts} attempt(s) "
            f"({'transient' if transient else 'non-transient'}): {cause}"
        )
        self.operation_name = operation_name
        self.transient = transient
        self.attempts = attempts
        self.cause = cause


class CircuitOpenError(PupError):
    """Raised without invoking the operation while the breaker is open"""

    def __init__(self, breaker_name: str, retry_after: float):
        super().__init__(
            f"Circuit breaker open for {breaker_name}. Retry after {retry_after:.1f} seconds."
        )
        self.breaker_name = breaker_name
        self.retry_after = retry_after


class StorageError(PupError):
    """Persistence or cache substrate failure"""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
