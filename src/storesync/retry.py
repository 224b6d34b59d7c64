from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import random
import time
from typing import TypeVar

from storesync.observability import log_event


LOGGER = logging.getLogger("storesync.retry")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter_ratio: float = 0.3
    retryable_statuses: frozenset[int] = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")

    def backoff_seconds(self, attempt: int, *, rng: Callable[[], float] = random.random) -> float:
        """Exponential delay for a zero-based attempt, plus up to ``jitter_ratio`` of it."""
        delay = self.initial_delay_seconds * (2**attempt)
        jitter = rng() * self.jitter_ratio * delay
        return min(delay + jitter, self.max_delay_seconds)


NO_RETRY = RetryPolicy(max_retries=0)


def run_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[Exception], bool],
    delay_hint: Callable[[Exception], float | None] = lambda exc: None,
    describe: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Call ``operation`` until it succeeds, retrying failures ``should_retry`` accepts.

    ``delay_hint`` lets the caller supply a server-mandated delay (``Retry-After``)
    that replaces the computed backoff for that attempt. When retries are exhausted
    the last exception propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as exc:
            if attempt >= policy.max_retries or not should_retry(exc):
                raise
            hinted = delay_hint(exc)
            delay = hinted if hinted is not None and hinted > 0 else policy.backoff_seconds(
                attempt, rng=rng
            )
            log_event(
                LOGGER,
                "request_retry",
                operation=describe,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay_seconds=round(delay, 3),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            sleep(delay)
            attempt += 1
