import logging
import time
from collections.abc import Callable
from typing import TypeVar

from monthly_report.errors import RetryExhaustedError


logger = logging.getLogger(__name__)
T = TypeVar("T")


def run_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    label: str = "operation",
    should_retry: Callable[[Exception], bool] | None = None,
) -> T:
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 2):
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            logger.warning(
                "%s attempt %s failed: %s",
                label,
                attempt,
                exc,
                extra={"operation": label, "attempt": attempt, "error": str(exc)},
            )

            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt > max_retries or not retry_allowed:
                break
            time.sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(f"{label} failed after {attempt} attempt(s): {last_error}") from last_error
