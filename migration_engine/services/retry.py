"""Retry-with-backoff helper shared by batch loads and attachment migration."""

import logging
from typing import Callable, Tuple, Type, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_retry(description: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"{description} failed (attempt {state.attempt_number}): {error}; retrying"
        )
    return before_sleep


def retry_with_backoff(
    func: Callable[[], T],
    attempts: int = 3,
    delay_seconds: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "Operation",
) -> T:
    """
    Call ``func`` until it succeeds or ``attempts`` calls have failed.

    Waits a fixed ``delay_seconds`` between attempts. The last exception
    is re-raised unchanged once attempts are exhausted.
    """
    retryer = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_fixed(delay_seconds),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry(description),
        reraise=True,
    )
    return retryer(func)
