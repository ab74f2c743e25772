"""
Bounded exponential-backoff retry for start-up dependencies.
"""

import logging
import socket
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNRESOLVABLE_HOST_MARKERS = (
    "no such host",
    "Name or service not known",
    "nodename nor servname provided",
    "Temporary failure in name resolution",
    "NameResolutionError",
)


def is_host_unresolvable(error: BaseException) -> bool:
    """True when the error says a host name could not be resolved."""
    if isinstance(error, socket.gaierror):
        return True
    message = str(error)
    return any(marker in message for marker in UNRESOLVABLE_HOST_MARKERS)


def retry_with_backoff(
    func: Callable[[], T],
    should_retry: Callable[[BaseException], bool],
    max_attempts: int = 10,
    initial_delay: float = 0.016,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Call ``func`` until it succeeds, doubling the delay between attempts.

    Args:
        func: Callable to run
        should_retry: Decides whether an error is worth another attempt
        max_attempts: Total number of calls before giving up
        initial_delay: Delay before the second attempt, in seconds
        sleep: Sleep function, defaults to time.sleep

    Returns:
        Whatever ``func`` returns

    Raises:
        Exception: The last error, or the first one ``should_retry`` rejects
    """
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except Exception as e:
            if attempt >= max_attempts or not should_retry(e):
                raise
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}, retrying in {delay:.3f}s..."
            )
            (sleep or time.sleep)(delay)
            delay *= 2
    raise ValueError("max_attempts must be at least 1")
