"""
Bounded poll-until-done primitive.

Used to wait for asynchronous backend operations: the probe is repeated while
it succeeds with a result that is still pending, and any probe failure ends
the wait immediately.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_fixed

from deployment_handler.errors import MaxRepetitionsError

T = TypeVar("T")


async def repeat_until_done(
    action: Callable[[], Awaitable[T]],
    is_still_pending: Callable[[T], bool],
    max_attempts: int,
    interval: float,
) -> T:
    """
    Run ``action`` until ``is_still_pending`` says its result is final.

    Args:
        action: Performs one probe
        is_still_pending: True if the probe result means "ask again later"
        max_attempts: Total number of probes allowed
        interval: Seconds to wait between probes

    Returns:
        The first result that is no longer pending

    Raises:
        MaxRepetitionsError: ``max_attempts`` probes all returned pending results
        Exception: whatever a failing probe raised, on its first occurrence
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(is_still_pending),
    )
    try:
        return await retrying(action)
    except RetryError as exc:
        raise MaxRepetitionsError(exc.last_attempt.attempt_number) from None
