"""
Standardised error handling for KnowledgeDistiller.
"""

from distiller.core.constants import ErrorKind, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, kind: str, message: str, retryable: bool | None = None,
                 retry_after: float | None = None):
        self.kind = kind
        self.message = message
        # auto-detect retryable from kind if not explicitly set
        self.retryable = retryable if retryable is not None else (kind in RETRYABLE_ERRORS)
        # seconds the backend asked us to wait (RateLimited only)
        self.retry_after = retry_after
        super().__init__(f"[{kind}] {message}")


class ConfigurationError(ValueError):
    """Raised when an application or provider configuration is unusable."""


class QueueFullError(RuntimeError):
    """Raised when the pending queue has reached its bound."""


class IllegalTransitionError(RuntimeError):
    """Raised on a status change the job state machine does not allow."""


class IllegalStateError(RuntimeError):
    """Raised when a write-once job field is written twice."""


def is_retryable(kind: str) -> bool:
    return kind in RETRYABLE_ERRORS


def cancelled_error(message: str = "Processing stopped by user") -> JobError:
    return JobError(ErrorKind.CANCELLED, message, retryable=False)
