import time
from typing import Any, Callable, Optional


# Patterns that suggest transient/temporary errors
TRANSIENT_ERROR_PATTERNS = [
    "timeout", "timed out", "temporarily unavailable", "deadline",
    "connection", "overloaded", "rate limit", "too many requests",
    "429", "500", "502", "503", "504",
    "connection reset", "broken pipe", "resource exhausted",
]


def is_transient_error_like(msg: str) -> bool:
    """
    Check if an error message suggests a transient/temporary failure.

    Args:
        msg: The error message to check

    Returns:
        True if error appears transient
    """
    error_lower = str(msg or "").lower()
    return any(pattern in error_lower for pattern in TRANSIENT_ERROR_PATTERNS)


def call_with_retries(
    fn: Callable[[], Any],
    max_retries: int = 3,
    backoff_factor: float = 2,
    initial_delay: float = 1,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Calls fn until it succeeds or max_retries attempts are used.
    Only errors accepted by should_retry (default: transient-looking errors) are retried;
    anything else propagates immediately.
    """
    retry_check = should_retry or (lambda exc: is_transient_error_like(str(exc)))
    delay = initial_delay
    attempts = max(1, int(max_retries))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            if attempt >= attempts or not retry_check(e):
                raise
            print(f"RETRYING_LLM_CALL (attempt {attempt}/{attempts}): {str(e)[:200]}")
            sleep(delay)
            delay *= backoff_factor
