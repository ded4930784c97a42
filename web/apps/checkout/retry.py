"""Bounded retry with exponential backoff.

Used by the orchestrator around the two network calls on the checkout
path (shipping quote, charge creation). The HTTP adapters make a single
attempt per call and translate failures into domain errors; the retry
budget is decided here from ``CheckoutConfig``.
"""

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(tries: int, base: float, cap: float) -> float:
    """Seconds to wait before attempt ``tries + 1`` (``tries`` >= 1)."""
    return min(base * (2 ** (tries - 1)), cap)


def call_with_retry(
    fn: Callable[[], T],
    attempts: int,
    retry_on: Tuple[Type[BaseException], ...],
    give_up_on: Tuple[Type[BaseException], ...] = (),
    backoff_base: float = 0.15,
    max_sleep: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> T:
    """Call ``fn`` up to ``attempts`` times.

    Only exceptions listed in ``retry_on`` are retried; the last one is
    re-raised once the budget is exhausted. Anything else, including the
    ``give_up_on`` subclasses of a retried type, propagates on the first
    occurrence.
    """
    attempts = max(1, attempts)
    tries = 0
    while True:
        try:
            return fn()
        except give_up_on:
            raise
        except retry_on as exc:
            tries += 1
            if tries >= attempts:
                logger.warning("%s failed, giving up", label, extra={"tries": tries, "error": str(exc)})
                raise
            delay = backoff_delay(tries, backoff_base, max_sleep)
            logger.info("%s failed, retrying", label, extra={"tries": tries, "delay": delay, "error": str(exc)})
            if delay > 0:
                sleep(delay)
