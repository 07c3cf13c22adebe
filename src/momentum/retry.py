"""
Bounded retry with an early-abort predicate.

Selling and redeeming share one retry policy: a fixed attempt cap with fixed
spacing, plus an abort check between attempts (price recovered, balance gone).
An abort is a success-equivalent exit, not a failure.

Example:
    outcome = await retry_until(
        lambda: gateway.place_market_order(token, units, "SELL", "FAK"),
        attempts=20,
        delay=1.5,
        should_abort=price_back_below_target,
    )
    if outcome.succeeded:
        ...
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_not_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)


class RetryStatus(Enum):
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    EXHAUSTED = "exhausted"


@dataclass
class RetryOutcome:
    """Result of a bounded retry run."""

    status: RetryStatus
    attempts: int
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RetryStatus.SUCCEEDED

    @property
    def aborted(self) -> bool:
        return self.status == RetryStatus.ABORTED

    @property
    def exhausted(self) -> bool:
        return self.status == RetryStatus.EXHAUSTED


class _AbortSignal(BaseException):
    """Raised when the abort predicate fires; tenacity only retries Exception."""
    pass


def _is_failure(result: Any) -> bool:
    """Treat None and results with success=False as failed attempts."""
    if result is None:
        return True
    success = getattr(result, "success", None)
    if success is not None:
        return not success
    return not result


async def retry_until(
    action: Callable[[], Awaitable[Any]],
    *,
    attempts: int,
    delay: float,
    should_abort: Optional[Callable[[], Awaitable[bool]]] = None,
    before_attempt: Optional[Callable[[], Awaitable[None]]] = None,
    is_failure: Callable[[Any], bool] = _is_failure,
    give_up_on: tuple = (),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: str = "operation",
) -> RetryOutcome:
    """
    Run `action` until it succeeds, the abort predicate fires, or attempts run out.

    Args:
        action: Coroutine factory performing one attempt
        attempts: Maximum number of attempts
        delay: Fixed spacing between attempts (seconds)
        should_abort: Checked before every attempt after the first; True ends
            the run with ABORTED
        before_attempt: Hook run before every attempt (e.g. allowance refresh)
        is_failure: Decides whether a returned value counts as a failure
        give_up_on: Exception types that are re-raised immediately, not retried
        sleep: Injectable sleep for deterministic tests
        operation_name: Label used in log messages

    Returns:
        RetryOutcome with status, attempts made and the last result/error
    """
    made = 0
    last_result: Any = None
    last_error: Optional[BaseException] = None

    async def _attempt() -> Any:
        nonlocal made, last_result, last_error
        if made > 0 and should_abort is not None and await should_abort():
            raise _AbortSignal()
        if before_attempt is not None:
            await before_attempt()
        made += 1
        try:
            last_result = await action()
            last_error = None
        except Exception as e:
            logger.debug(f"{operation_name} attempt {made}/{attempts} raised: {e}")
            last_result = None
            last_error = e
            raise
        return last_result

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_result(is_failure) | (
            retry_if_exception_type(Exception) & retry_if_not_exception_type(give_up_on)
        ),
        sleep=sleep,
        reraise=False,
    )

    try:
        result = await retrying(_attempt)
    except _AbortSignal:
        logger.info(f"{operation_name} aborted after {made} attempt(s)")
        return RetryOutcome(RetryStatus.ABORTED, made, last_result, last_error)
    except RetryError:
        logger.warning(f"{operation_name} exhausted {made} attempt(s)")
        return RetryOutcome(RetryStatus.EXHAUSTED, made, last_result, last_error)

    return RetryOutcome(RetryStatus.SUCCEEDED, made, result, None)
