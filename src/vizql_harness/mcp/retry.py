"""Retry classification and backoff for tool service calls."""

from __future__ import annotations

from dataclasses import dataclass

from vizql_harness.config import RetrySpec
from vizql_harness.errors import ToolError

_SESSION_MARKERS = ("No valid session ID", "session ID")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(initial * multiplier**n, max_delay)``."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    @classmethod
    def from_spec(cls, spec: RetrySpec) -> "RetryPolicy":
        return cls(
            max_retries=spec.max_retries,
            initial_delay=spec.initial_delay,
            max_delay=spec.max_delay,
            multiplier=spec.multiplier,
        )

    def delay(self, retry_number: int) -> float:
        """Delay before the *retry_number*-th retry (1-based)."""
        return backoff_delay(
            retry_number - 1, self.initial_delay, self.max_delay, self.multiplier,
        )


def backoff_delay(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    multiplier: float,
) -> float:
    return min(initial_delay * (multiplier ** attempt), max_delay)


def should_retry(error: ToolError, attempt: int, policy: RetryPolicy) -> bool:
    """Whether *error* on zero-based *attempt* earns another attempt."""
    if attempt >= policy.max_retries:
        return False
    return error.retryable


def is_session_error(error: ToolError) -> bool:
    """The service rejected the request for a missing or stale session."""
    if error.code != 400:
        return False
    text = str(error.details.get("body") or error.message or "")
    return any(marker in text for marker in _SESSION_MARKERS)


def is_accept_error(error: ToolError) -> bool:
    """The service rejected the request's ``Accept`` header."""
    if error.code == 406:
        return True
    return error.code == 400 and "accept" in (error.message or "").lower()
