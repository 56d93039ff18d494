from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from .utils import log_event

T = TypeVar("T")


def _default_is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    ``max_attempts`` counts the first call, so ``max_attempts=1`` never
    retries. The delay before attempt ``n + 1`` is
    ``base_delay_seconds * multiplier ** (n - 1)`` capped at
    ``max_delay_seconds``.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    multiplier: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay_seconds * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_delay_seconds)

    def run(
        self,
        fn: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool] | None = None,
        on_retry: Callable[[int, BaseException], None] | None = None,
        logger: logging.Logger | None = None,
        name: str = "operation",
    ) -> T:
        check = is_retryable or _default_is_retryable
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except Exception as exc:
                if attempt >= attempts or not check(exc):
                    raise
                delay = self.delay_for(attempt)
                if logger is not None:
                    log_event(
                        logger,
                        logging.WARNING,
                        "retry_scheduled",
                        operation=name,
                        attempt=attempt,
                        delay_seconds=delay,
                        error=str(exc),
                    )
                if on_retry is not None:
                    on_retry(attempt, exc)
                self.sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover
