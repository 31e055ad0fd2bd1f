import logging
from typing import Callable, Type, Union, Tuple

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

# Configure a logger for retries
logger = logging.getLogger("edmcp_core.utils")


def retry_with_backoff(
    retries: int = 3,
    backoff_in_seconds: float = 1,
    max_wait_in_seconds: float = 10,
    exceptions: Union[Type[Exception], Tuple[Type[Exception], ...]] = Exception
) -> Callable:
    """
    A decorator that retries a function with exponential backoff.
    The last exception is re-raised once the attempts are used up.
    """
    return retry(
        stop=stop_after_attempt(retries),
        wait=wait_exponential(multiplier=backoff_in_seconds, max=max_wait_in_seconds),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True
    )
