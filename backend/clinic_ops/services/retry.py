from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError

logger = logging.getLogger("clinic_ops.retry")

C = TypeVar("C")
T = TypeVar("T")

UNIQUE_VIOLATION_SQLSTATE = "23505"


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_unique_violation(exc: BaseException) -> bool:
    if not isinstance(exc, IntegrityError):
        return False
    orig = exc.orig
    if getattr(orig, "sqlstate", None) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    if getattr(orig, "pgcode", None) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    message = str(orig).lower()
    return "unique constraint" in message or "duplicate key" in message


def retry_with_jitter(
    compute: Callable[[], C],
    write: Callable[[C], T],
    *,
    is_retryable: Callable[[BaseException], bool] = is_unique_violation,
    max_attempts: int = 3,
    base_delay: float = 0.04,
    jitter: float = 0.04,
    on_retry: Callable[[BaseException, int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``write(compute())`` until it succeeds or attempts run out.

    ``compute`` is re-run on every attempt so each write sees fresh state.
    ``on_retry`` is called after every retryable failure (including the
    last) and is where the caller rolls back its session.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        candidate = compute()
        try:
            return write(candidate)
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_error = exc
            if on_retry is not None:
                on_retry(exc, attempt)
            if attempt < max_attempts:
                delay = base_delay + random.uniform(0, jitter)
                logger.debug("retrying after %.3fs (attempt %d/%d)", delay, attempt, max_attempts)
                sleep(delay)
    raise RetryExhausted(max_attempts, last_error)
