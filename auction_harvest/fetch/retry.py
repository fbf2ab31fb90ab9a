"""Shared retry/backoff discipline for API requests and transfers."""
import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from auction_harvest.errors import TransientNetworkError

logger = logging.getLogger(__name__)


def wait_sequence(delays: Sequence[float]) -> Callable[[RetryCallState], float]:
    """Wait strategy walking a fixed delay list; the last delay repeats."""
    delays = tuple(delays) or (1.0,)

    def _wait(retry_state: RetryCallState) -> float:
        index = min(retry_state.attempt_number - 1, len(delays) - 1)
        return delays[index]

    return _wait


def build_retrying(
    max_retries: int,
    delays: Sequence[float],
    description: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_on: tuple[type[BaseException], ...] = (TransientNetworkError,),
) -> AsyncRetrying:
    """Build an AsyncRetrying allowing ``max_retries`` retries after the first try."""

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Request failed (attempt {retry_state.attempt_number}/{max_retries + 1}), "
            f"retrying in {wait:.1f}s: {description}: {exc}"
        )

    return AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_sequence(delays),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
