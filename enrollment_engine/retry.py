"""Bounded retry with exponential backoff for device operations.

Each attempt's result is classified by the caller into one of four
verdicts. Only RETRYABLE results are retried; the delay before retry n
(zero-based index of the attempt that just failed) is
``min(base_delay * 2**n, max_delay)`` and no delay follows the last attempt.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, List, Optional, TypeVar

from enrollment_engine.logging_config import get_logger

logger = get_logger(__name__)

R = TypeVar("R")


class RetryVerdict(str, Enum):
    SUCCESS = "SUCCESS"
    ALREADY_SATISFIED = "ALREADY_SATISFIED"
    RETRYABLE = "RETRYABLE"
    TERMINAL = "TERMINAL"


@dataclass
class RetryOutcome(Generic[R]):
    """Final result of a retried operation.

    Attributes:
        result: Result of the last attempt
        verdict: Classification of the last attempt
        attempts: Number of attempts made (1..max_attempts)
    """

    result: R
    verdict: RetryVerdict
    attempts: int

    @property
    def succeeded(self) -> bool:
        return self.verdict in (RetryVerdict.SUCCESS, RetryVerdict.ALREADY_SATISFIED)

    @property
    def exhausted(self) -> bool:
        """True when the last attempt was still retryable (attempts ran out)."""
        return self.verdict is RetryVerdict.RETRYABLE


def backoff_delay(attempt_index: int, base_delay: float, max_delay: float) -> float:
    """Delay after the zero-based attempt ``attempt_index`` failed."""
    return min(base_delay * (2 ** attempt_index), max_delay)


def backoff_delays(max_attempts: int, base_delay: float, max_delay: float) -> List[float]:
    """Full delay schedule between ``max_attempts`` attempts."""
    return [backoff_delay(n, base_delay, max_delay) for n in range(max(max_attempts - 1, 0))]


def with_retry(
    op: Callable[[int], R],
    classify: Callable[[R], RetryVerdict],
    max_attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, R], None]] = None,
    label: str = "device operation",
) -> RetryOutcome[R]:
    """Run ``op`` until it succeeds, fails terminally, or attempts run out.

    Args:
        op: Operation to run; receives the 1-based attempt number
        classify: Maps each result to a RetryVerdict
        max_attempts: Upper bound on attempts (>= 1)
        base_delay: First backoff delay in seconds
        max_delay: Backoff cap in seconds
        sleep: Sleep function (injected by tests)
        on_retry: Hook called with (attempt, result) before sleeping for a retry
        label: Operation name used in log messages

    Returns:
        RetryOutcome for the last attempt. On exhaustion its verdict is
        RETRYABLE and ``succeeded`` is False.

    Raises:
        ValueError: If max_attempts < 1.
        Exception: Anything raised by ``op``, ``classify`` or ``on_retry`` propagates.

    Example:
        >>> outcome = with_retry(lambda n: device.merge_face(creds, "E1", img), classify_face_merge)
        >>> outcome.succeeded, outcome.attempts
        (True, 1)
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    attempt = 0
    while True:
        attempt += 1
        result = op(attempt)
        verdict = classify(result)

        if verdict in (RetryVerdict.SUCCESS, RetryVerdict.ALREADY_SATISFIED):
            if attempt > 1 or verdict is RetryVerdict.ALREADY_SATISFIED:
                logger.info(f"{label} finished on attempt {attempt}/{max_attempts}: {verdict.value}")
            return RetryOutcome(result=result, verdict=verdict, attempts=attempt)

        if verdict is RetryVerdict.TERMINAL:
            logger.warning(f"{label} failed terminally on attempt {attempt}/{max_attempts}")
            return RetryOutcome(result=result, verdict=verdict, attempts=attempt)

        if attempt >= max_attempts:
            logger.warning(f"{label} still failing after {attempt} attempts; giving up")
            return RetryOutcome(result=result, verdict=verdict, attempts=attempt)

        delay = backoff_delay(attempt - 1, base_delay, max_delay)
        logger.info(
            f"{label} attempt {attempt}/{max_attempts} is retryable; retrying in {delay:.1f}s"
        )
        if on_retry is not None:
            on_retry(attempt, result)
        sleep(delay)
