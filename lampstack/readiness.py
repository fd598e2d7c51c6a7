"""
Bounded readiness polling with exponential backoff.
"""

import time
from typing import Callable, Iterator, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_exponential

from .exceptions import ReadinessTimeoutError


def backoff_delays(delay: float, backoff: float, max_delay: float) -> Iterator[float]:
    """Yield delay, delay*backoff, ... capped at max_delay, forever."""
    current = delay
    while True:
        yield min(current, max_delay)
        current *= backoff


def wait_until_ready(
    is_ready: Callable[[float], bool],
    target: str,
    *,
    retries: int,
    delay: float,
    backoff: float = 2.0,
    max_delay: float = 15.0,
    timeout: float = 120.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    on_retry: Optional[Callable[[int, float], None]] = None,
) -> int:
    """
    Poll is_ready until it returns True; return the number of attempts used.

    is_ready is called with the seconds left before the deadline and must not
    run longer than that. Gives up after `retries` attempts or once `timeout`
    seconds have passed, whichever comes first, and raises
    ReadinessTimeoutError. No sleep ever extends past the deadline.
    """
    started = clock()
    deadline = started + timeout
    exponential = wait_exponential(multiplier=delay, exp_base=backoff, max=max_delay)
    attempts = 0

    def attempt() -> bool:
        nonlocal attempts
        attempts += 1
        remaining = deadline - clock()
        return remaining > 0 and bool(is_ready(remaining))

    def deadline_passed(retry_state) -> bool:
        return clock() >= deadline

    def capped_wait(retry_state) -> float:
        return min(exponential(retry_state), max(0.0, deadline - clock()))

    def before_sleep(retry_state) -> None:
        on_retry(retry_state.attempt_number, retry_state.next_action.sleep)

    retrying = Retrying(
        stop=stop_after_attempt(retries) | deadline_passed,
        wait=capped_wait,
        retry=retry_if_result(lambda ready: not ready),
        sleep=sleep,
        before_sleep=before_sleep if on_retry else None,
    )
    try:
        retrying(attempt)
    except RetryError:
        raise ReadinessTimeoutError(target, attempts, clock() - started)
    return attempts
