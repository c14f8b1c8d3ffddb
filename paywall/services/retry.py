# paywall/services/retry.py
"""
Retry with exponential backoff for calls to the custodial signer and RPC node.

Only transport-level failures are retried. Callers decide which exceptions
are retryable; everything else propagates on the first attempt.
"""
import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_backoff(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter: float = 0.1,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "backend call",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Call ``func`` until it succeeds or ``attempts`` are exhausted.

    Args:
        func: Zero-argument callable to invoke.
        attempts: Total number of attempts (at least 1).
        base_delay: Delay before the first retry in seconds; doubles each retry.
        max_delay: Upper bound for a single delay.
        jitter: Fraction of the delay added or removed at random.
        retry_on: Exception types that trigger a retry.
        description: Label used in log messages.
        sleep: Sleep function (injectable for tests).

    Returns:
        Whatever ``func`` returns.

    Raises:
        The last exception raised by ``func`` once attempts are exhausted.
    """
    sleep = sleep or time.sleep
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            return func()
        except retry_on as e:
            if attempt == attempts - 1:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise

            delay = min(base_delay * (2 ** attempt), max_delay)
            if jitter > 0:
                delay += random.uniform(-delay * jitter, delay * jitter)
            delay = max(0.0, delay)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{attempts}): {e}; "
                f"retrying in {delay:.2f}s"
            )
            sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
