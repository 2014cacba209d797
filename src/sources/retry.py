"""Retry policy for rate limited Slack Web API calls.

`RetryPolicy` wraps a zero-argument callable that performs one remote call and
retries it while Slack signals rate limiting:

- HTTP 429, or the Slack error code ``ratelimited``
- or a server supplied ``Retry-After`` hint (seconds)

Wait before retry N (1-based):

    wait = min(max(retry_after, base_backoff * 2 ** (N - 1)), max_backoff)

Any other failure propagates on the first attempt; waiting does not fix a
missing channel or an invalid token. When the attempts are exhausted the last
error is re-raised unchanged, so callers see the original SDK exception.

Intended usage:
    policy = RetryPolicy(max_attempts=5)
    resp = policy.call(lambda: client.conversations_history(channel="C1"), "conversations.history")
"""

import logging
import time
from typing import Any, Callable, Optional, Tuple, TypeVar

from src.metrics.metrics import API_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_STATUS = 429
RATE_LIMIT_ERROR_CODES = ("ratelimited", "rate_limited")


def _parse_retry_after(value: Any) -> float:
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return 0.0


def rate_limit_signal(exc: BaseException) -> Tuple[Optional[int], float, bool]:
    """Inspect an exception for a rate limit signal.

    Understands `slack_sdk.errors.SlackApiError` (status and headers on
    `exc.response`) as well as plain exceptions carrying `status`,
    `status_code`, `retry_after` or `headers` attributes.

    Args:
        exc: The exception raised by the remote call.

    Returns:
        Tuple of (HTTP status or None, Retry-After seconds or 0, is_rate_limited).
    """
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None

    headers = getattr(response, "headers", None) or getattr(exc, "headers", None) or {}
    retry_after = 0.0
    if isinstance(headers, dict):
        # Header casing differs between the SDK transports
        for name, value in headers.items():
            if str(name).lower() == "retry-after":
                retry_after = _parse_retry_after(value)
                break
    if not retry_after:
        retry_after = _parse_retry_after(getattr(exc, "retry_after", 0))

    error_code = None
    if response is not None and hasattr(response, "get"):
        try:
            error_code = response.get("error")
        except (AttributeError, TypeError):
            error_code = None

    is_rate_limited = status == RATE_LIMIT_STATUS or retry_after > 0 or error_code in RATE_LIMIT_ERROR_CODES
    return status, retry_after, is_rate_limited


class RetryPolicy:
    """Retry-until-success-or-exhaustion wrapper for rate limited calls.

    Args:
        max_attempts: Total attempts including the first call.
        base_backoff_seconds: Backoff for the first retry; doubles every attempt.
        max_backoff_seconds: Upper bound for a single wait.
        sleep: Sleep function, replaceable in tests.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_backoff_seconds: float = 5.0,
        max_backoff_seconds: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the policy."""
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_backoff_seconds = float(base_backoff_seconds)
        self.max_backoff_seconds = float(max_backoff_seconds)
        self._sleep = sleep

    def compute_wait(self, attempt: int, retry_after: float = 0.0) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        backoff = self.base_backoff_seconds * (2 ** max(0, attempt - 1))
        return min(max(float(retry_after or 0.0), backoff), self.max_backoff_seconds)

    def call(self, operation: Callable[[], T], name: str = "slack-api") -> T:
        """Run `operation`, retrying while it is rate limited.

        Args:
            operation: Zero-argument callable performing one remote call.
            name: Operation name used in logs and metrics.

        Returns:
            Whatever `operation` returns.

        Raises:
            Exception: The first non rate limit error, or the last error once
                attempts are exhausted.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = operation()
            except Exception as e:
                status, retry_after, is_rate_limited = rate_limit_signal(e)
                will_retry = is_rate_limited and attempt < self.max_attempts
                wait = self.compute_wait(attempt, retry_after) if will_retry else 0.0
                logger.warning(
                    f"{name} failed (attempt {attempt}/{self.max_attempts}): status={status if status else 'n/a'} "
                    f"retry_after={retry_after:g} rate_limited={is_rate_limited} wait={wait:g}s "
                    f"error={str(e)[:200]}"
                )
                if not will_retry:
                    raise
                API_RETRIES.labels(operation=name).inc()
                self._sleep(wait)
                continue
            if attempt > 1:
                logger.info(f"{name} succeeded after {attempt} attempts")
            return result


def with_retry(
    operation: Callable[[], T],
    name: str = "slack-api",
    max_attempts: int = 5,
    policy: Optional[RetryPolicy] = None,
) -> T:
    """Run `operation` with a retry policy (a default one if not given)."""
    effective = policy if policy is not None else RetryPolicy(max_attempts=max_attempts)
    return effective.call(operation, name)
