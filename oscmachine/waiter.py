"""Polling for eventually consistent remote state."""

import time
from collections.abc import Callable

from .errors import WaitTimeoutError
from .utils import debug

WAIT_ATTEMPTS = 60
WAIT_DELAY = 3.0


def wait_for(
    predicate: Callable[[], bool],
    description: str,
    *,
    attempts: int = WAIT_ATTEMPTS,
    delay: float = WAIT_DELAY,
) -> None:
    """Call predicate until it returns True.

    The predicate is expected to treat query failures as "not ready yet".

    :param predicate: Zero-argument readiness check
    :param description: What is being waited for, used in the timeout message
    :param attempts: Maximum number of predicate calls
    :param delay: Seconds to sleep between calls
    :raises WaitTimeoutError: If the predicate never returns True
    """
    for attempt in range(attempts):
        if predicate():
            if attempt > 0:
                debug(f"{description} ready after {attempt + 1} attempts")
            return
        if attempt < attempts - 1:
            time.sleep(delay)
    raise WaitTimeoutError(description)
