"""
Retry policy and error classification for provider calls.

Backends fail in many ways; everything is folded into four kinds:
AuthError, RateLimited, BadRequest, ProviderUnavailable.
Only RateLimited and ProviderUnavailable are retried, with exponential
backoff and jitter (2s, 4s, 8s, ... capped). A backend Retry-After hint
is honoured as a floor on the delay; a hint longer than
`max_retry_after` ends the job instead.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import requests

from distiller.core.constants import (
    ErrorKind, RATE_LIMIT_MAX_ATTEMPTS, UNAVAILABLE_MAX_ATTEMPTS,
    RETRY_BASE_DELAY_SEC, RETRY_MAX_DELAY_SEC, RETRY_JITTER, RETRY_AFTER_MAX_SEC,
)
from distiller.core.error_codes import JobError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    rate_limit_attempts: int = RATE_LIMIT_MAX_ATTEMPTS
    unavailable_attempts: int = UNAVAILABLE_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY_SEC
    max_delay: float = RETRY_MAX_DELAY_SEC
    jitter: float = RETRY_JITTER
    max_retry_after: float = RETRY_AFTER_MAX_SEC

    def max_attempts(self, kind: str) -> int:
        """Total provider calls allowed while the last failure is `kind`."""
        if kind == ErrorKind.RATE_LIMITED:
            return self.rate_limit_attempts
        if kind == ErrorKind.PROVIDER_UNAVAILABLE:
            return self.unavailable_attempts
        return 1

    def wait_too_long(self, error: JobError) -> bool:
        """The backend asked for a longer pause than a job will sit through."""
        return error.retry_after is not None and error.retry_after > self.max_retry_after

    def should_retry(self, error: JobError, attempt: int) -> bool:
        """`attempt` is the 1-based number of the call that just failed."""
        if not error.retryable or self.wait_too_long(error):
            return False
        return attempt < self.max_attempts(error.kind)

    def backoff_delay(self, error: JobError, attempt: int,
                      rng: random.Random | None = None) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter and delay > 0:
            delay *= 1 + (rng or random).uniform(-self.jitter, self.jitter)
        if error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return max(0.0, delay)


# ── Classification ────────────────────────────────────────────────────

def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Unparseable Retry-After header: %r", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def classify_http_status(status: int, message: str,
                         retry_after: float | None = None) -> JobError:
    """Map an HTTP status from a backend to a provider error kind."""
    if status in (401, 403):
        return JobError(ErrorKind.AUTH_ERROR, message)
    if status == 429:
        return JobError(ErrorKind.RATE_LIMITED, message, retry_after=retry_after)
    if status in (408, 425) or status >= 500:
        return JobError(ErrorKind.PROVIDER_UNAVAILABLE, message)
    if 400 <= status < 500:
        return JobError(ErrorKind.BAD_REQUEST, message)
    return JobError(ErrorKind.PROVIDER_UNAVAILABLE, message)


def classify_request_exception(exc: Exception, provider_name: str = "provider") -> JobError:
    """Map a transport-level failure (no HTTP response) to a provider error."""
    if isinstance(exc, requests.exceptions.Timeout):
        return JobError(ErrorKind.PROVIDER_UNAVAILABLE,
                        f"{provider_name} request timed out")
    if isinstance(exc, requests.exceptions.ConnectionError):
        return JobError(ErrorKind.PROVIDER_UNAVAILABLE,
                        f"Network error connecting to {provider_name}")
    if isinstance(exc, (requests.exceptions.InvalidURL,
                        requests.exceptions.MissingSchema,
                        requests.exceptions.InvalidSchema)):
        return JobError(ErrorKind.BAD_REQUEST,
                        f"Invalid {provider_name} endpoint: {exc}")
    return JobError(ErrorKind.PROVIDER_UNAVAILABLE,
                    f"{provider_name} request failed: {exc}")
