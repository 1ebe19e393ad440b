from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConsistencyTimeoutError(RuntimeError):
    """Raised when an eventually-consistent record never shows up."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


def wait_for(
    probe: Callable[[], Optional[T]],
    *,
    attempts: int = 6,
    delay: float = 0.25,
    backoff: float = 1.0,
    max_elapsed: float | None = None,
    description: str = "record",
    sleep: Optional[Callable[[float], None]] = None,
    clock: Optional[Callable[[], float]] = None,
) -> T:
    """Call ``probe`` until it returns something truthy.

    The probe is called at most ``attempts`` times with ``delay`` seconds
    between calls; the delay is multiplied by ``backoff`` after each miss.
    When ``max_elapsed`` is given, no further attempt is started once that
    many seconds have passed. Exceptions raised by the probe propagate.
    """

    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    sleep = sleep or time.sleep
    clock = clock or time.monotonic

    started = clock()
    wait = delay
    for attempt in range(1, attempts + 1):
        result = probe()
        if result:
            if attempt > 1:
                logger.info("%s appeared after %d attempts", description, attempt)
            return result
        if attempt == attempts:
            break
        if max_elapsed is not None and clock() - started + wait > max_elapsed:
            logger.warning("Giving up on %s after %d attempts (time cap)", description, attempt)
            raise ConsistencyTimeoutError(
                f"{description} not found within {max_elapsed:.2f}s",
                attempt,
            )
        logger.debug(
            "%s not found (attempt %d/%d), retrying in %.2fs",
            description,
            attempt,
            attempts,
            wait,
        )
        sleep(wait)
        wait *= backoff

    logger.warning("Giving up on %s after %d attempts", description, attempts)
    raise ConsistencyTimeoutError(
        f"{description} not found after {attempts} attempts",
        attempts,
    )
