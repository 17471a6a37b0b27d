"""Retry helpers with exponential backoff."""
import functools
import time
from typing import Callable, Tuple, Type

from rigging.core.logger import get_logger

logger = get_logger(__name__)


def retry(
    max_attempts: int = 3,
    delay: float = 2.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] = None,
):
    """Retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay in seconds between attempts
        backoff: Backoff multiplier for each retry
        exceptions: Tuple of exception types to catch and retry
        on_retry: Optional callback invoked with (attempt, error) before sleeping

    Example:
        @retry(max_attempts=3, delay=5, exceptions=(EnvironmentSetupError,))
        def setup(self):
            ...
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: {e}"
                        )
                        raise

                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_attempts}): {e}"
                    )
                    if on_retry is not None:
                        on_retry(attempt, e)
                    if current_delay > 0:
                        logger.info(f"Retrying in {current_delay:.1f}s...")
                        time.sleep(current_delay)
                    current_delay *= backoff

            return None

        return wrapper

    return decorator


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll a predicate until it returns True or the timeout elapses.

    Exceptions raised by the predicate count as a failed poll.

    Returns:
        True if the predicate succeeded within the timeout
    """
    deadline = clock() + timeout
    while True:
        try:
            if predicate():
                return True
        except Exception as e:
            logger.debug(f"Poll raised {type(e).__name__}: {e}")

        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining))
