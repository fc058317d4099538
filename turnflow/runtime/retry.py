from __future__ import annotations

import random
from typing import Literal

from turnflow.errors import FatalProviderError, RetryableProviderError

FailureKind = Literal["retryable", "fatal"]

# HTTP status codes that are transient and safe to retry.
_RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504, 529}
_PERMANENT_QUOTA_MARKERS = ("insufficient_quota", "quota exceeded permanently", "billing")


def compute_backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    exponential = base_delay * (2 ** max(attempt - 1, 0))
    jitter = random.uniform(0.0, base_delay)
    return min(exponential + jitter, max_delay)


def _status_code(exc: Exception) -> int | None:
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_failure(exc: Exception) -> FailureKind:
    """Split provider failures into transient ones and ones that will not resolve.

    Typed provider errors win. A 429 carrying a permanent-quota marker is fatal;
    other 429s are rate limits. Errors with no status code are retryable only when
    they look like network trouble.
    """
    if isinstance(exc, RetryableProviderError):
        return "retryable"
    if isinstance(exc, FatalProviderError):
        return "fatal"

    message = str(exc).lower()
    status_code = _status_code(exc)
    if status_code == 402 or any(marker in message for marker in _PERMANENT_QUOTA_MARKERS):
        return "fatal"
    if status_code is not None:
        return "retryable" if status_code in _RETRYABLE_STATUS_CODES else "fatal"

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return "retryable"
    exc_name = type(exc).__name__.lower()
    if any(term in exc_name for term in ("timeout", "connection", "network", "ratelimit")):
        return "retryable"
    return "fatal"


def is_retryable_error(exc: Exception) -> bool:
    return classify_failure(exc) == "retryable"
