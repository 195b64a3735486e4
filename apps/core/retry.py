"""
Bounded retry with exponential backoff for recoverable collaborator failures
(extraction model calls, transient storage errors)
"""

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delays(attempts: int, base_delay: float, max_delay: float):
    """Delays slept between attempts: base, 2*base, 4*base ... capped at max_delay"""
    return [min(base_delay * (2 ** n), max_delay) for n in range(max(attempts - 1, 0))]


def retry_with_backoff(
        func: Callable[[], T],
        *,
        attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
        description: str = 'operation',
) -> T:
    """
    Call func until it succeeds or attempts run out

    Args:
        func: zero-argument callable
        attempts: total number of calls (>= 1)
        retry_on: exception types considered recoverable; anything else propagates at once
        sleep: injectable for tests

    Returns:
        func's result

    Raises:
        The last recoverable exception once attempts are exhausted
    """
    if attempts < 1:
        raise ValueError('attempts must be >= 1')

    delays = backoff_delays(attempts, base_delay, max_delay)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            if attempt == attempts:
                logger.warning(f"{description} failed after {attempts} attempts: {exc}")
                raise
            delay = delays[attempt - 1]
            logger.info(f"{description} attempt {attempt}/{attempts} failed ({exc}); retrying in {delay:.2f}s")
            sleep(delay)
