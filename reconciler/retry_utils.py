from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 8.0
    jitter_ratio: float = 0.25

    def delay_for_attempt(self, attempt: int) -> float:
        backoff = min(
            self.base_delay_seconds * (self.multiplier ** (attempt - 1)),
            self.max_delay_seconds,
        )
        jitter = backoff * self.jitter_ratio * random.random()
        return backoff + jitter


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, *, attempts: int, retryable: bool) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.retryable = retryable


def run_with_retry(
    operation: Callable[[], T],
    should_retry: Callable[[Exception], bool],
    policy: RetryPolicy | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> T:
    active = policy or RetryPolicy()
    last_error: Exception | None = None
    retryable = False
    attempt = 0
    for attempt in range(1, active.max_attempts + 1):
        try:
            return operation()
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            retryable = should_retry(exc)
            if attempt >= active.max_attempts or not retryable:
                break
            delay = active.delay_for_attempt(attempt)
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                active.max_attempts,
                exc,
                delay,
            )
            sleep_fn(delay)
    raise RetryExhaustedError(
        f"Operation failed after {attempt} attempt(s): {last_error}",
        attempts=attempt,
        retryable=retryable,
    ) from last_error
