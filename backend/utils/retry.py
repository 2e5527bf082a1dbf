"""Bounded retry policy used by the external adapters."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

from utils.errors import RateLimited, RetryInterrupted

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(base: float = 1.0, factor: float = 2.0, cap: float = 30.0) -> Callable[[int], float]:
    """Return a backoff function: attempt 1 -> base, attempt 2 -> base*factor, ..."""

    def _delay(attempt: int) -> float:
        return min(base * (factor ** max(attempt - 1, 0)), cap)

    return _delay


@dataclass
class RetryPolicy:
    """Retry ``retry_on`` exceptions up to ``max_attempts`` calls in total.

    When the error carries a ``retry_after`` hint (rate limits), the longer of
    the hint and the backoff delay is used. A hint above ``max_delay`` is not
    waited for: the error is raised as if the attempts were exhausted.

    Waits happen on ``stop_event`` when the caller passes one, so setting it
    wakes the waiting worker; the next attempt then raises
    ``RetryInterrupted`` instead of calling ``func``. ``sleep`` replaces the
    wait entirely (tests).
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    retry_on: Tuple[Type[BaseException], ...] = (RateLimited,)
    max_delay: float = 60.0
    sleep: Optional[Callable[[float], None]] = None

    def call(
        self,
        func: Callable[..., T],
        *args,
        stop_event: Optional[threading.Event] = None,
        **kwargs,
    ) -> T:
        attempts = max(1, self.max_attempts)
        attempt = 0
        while True:
            if stop_event is not None and stop_event.is_set():
                raise RetryInterrupted(f"Arret demande avant la tentative {attempt + 1}")
            attempt += 1
            try:
                return func(*args, **kwargs)
            except self.retry_on as exc:
                if attempt >= attempts:
                    raise
                delay = self.backoff(attempt)
                hint: Optional[float] = getattr(exc, "retry_after", None)
                if hint:
                    if hint > self.max_delay:
                        logger.warning(
                            "Attempt %d/%d failed (%s), server asks to wait %.0fs (max %.0fs), giving up",
                            attempt, attempts, exc, hint, self.max_delay,
                        )
                        raise
                    delay = max(delay, hint)
                delay = min(delay, self.max_delay)
                logger.warning(
                    "Attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt, attempts, exc, delay,
                )
                self._wait(delay, stop_event)

    def _wait(self, delay: float, stop_event: Optional[threading.Event]) -> None:
        if self.sleep is not None:
            self.sleep(delay)
            return
        (stop_event or threading.Event()).wait(delay)

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1)
