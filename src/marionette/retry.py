from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from .errors import ConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(attempts: int, base: float, maximum: float) -> list[float]:
    """Delays slept between ``attempts`` tries: base, 2*base, 4*base... capped."""
    return [min(base * (2 ** n), maximum) for n in range(max(attempts - 1, 0))]


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int,
    base: float,
    maximum: float,
    retry_on: tuple[type[BaseException], ...] = (ConnectionError,),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[T, int]:
    """Call ``fn`` until it succeeds; return its value and the attempt count.

    Only exceptions in ``retry_on`` are retried. The last one is re-raised
    once ``attempts`` tries are used up.
    """
    delays = backoff_delays(attempts, base, maximum)
    for attempt in range(1, attempts + 1):
        try:
            return fn(), attempt
        except retry_on as exc:
            if on_retry:
                on_retry(attempt, exc)
            if attempt == attempts:
                raise
            delay = delays[attempt - 1]
            logger.debug("attempt=%s failed: %s; retrying in %.2fs", attempt, exc, delay)
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover

