"""Retry with exponential backoff.

The policy is a pure decision, ``decide(attempt, cause)``, so backoff can be
tested without sleeping. ``call_with_retry`` drives it with an injected
``sleep`` callable and reports every failed attempt through ``on_failure``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

from .errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0

    @classmethod
    def give_up(cls) -> "RetryDecision":
        return cls(retry=False)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff seeded at ``backoff_ms``.

    ``retry_max`` counts retries, so a call is attempted at most
    ``retry_max + 1`` times.
    """
    retry_max: int = 3
    backoff_ms: int = 500
    max_backoff_ms: int = 30_000

    def decide(self, attempt: int, cause: BaseException) -> RetryDecision:
        """Decide what to do after failed attempt number ``attempt`` (1-based)."""
        if not is_retryable(cause) or attempt > self.retry_max:
            return RetryDecision.give_up()
        delay_ms = min(self.backoff_ms * (2 ** (attempt - 1)), self.max_backoff_ms)
        return RetryDecision(retry=True, delay=delay_ms / 1000.0)


class RetryExhausted(Exception):
    """Raised by ``call_with_retry`` when it stops trying."""

    def __init__(self, attempts: int, cause: BaseException):
        super().__init__(f"gave up after {attempts} attempt(s): {cause}")
        self.attempts = attempts
        self.cause = cause


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    on_failure: Optional[Callable[[int, BaseException], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    label: str = "call",
) -> Tuple[T, int]:
    """Call ``fn`` until it succeeds or ``policy`` gives up.

    An attempt that has started always runs to completion. When
    ``should_stop`` returns True no further attempt is scheduled.

    Returns:
        (result, attempts)

    Raises:
        RetryExhausted: wrapping the last error.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except Exception as exc:
            if on_failure is not None:
                on_failure(attempt, exc)
            decision = policy.decide(attempt, exc)
            if not decision.retry:
                raise RetryExhausted(attempt, exc) from exc
            if should_stop is not None and should_stop():
                logger.warning("%s: stop requested, not retrying after attempt %d: %s", label, attempt, exc)
                raise RetryExhausted(attempt, exc) from exc
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                policy.retry_max + 1,
                decision.delay,
                exc,
            )
            sleep(decision.delay)
