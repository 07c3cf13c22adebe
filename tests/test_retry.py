"""
Tests for bounded retry with early abort, and the deferred job queue.
"""

import asyncio

import pytest

from src.momentum.retry import RetryStatus, retry_until
from src.momentum.scheduler import DeferredJobQueue, ManualClock
from src.trading.gateway import InvalidOrderError, OrderResult, TransientGatewayError


class Script:
    """Returns scripted results in order, recording each call."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


FAILED = OrderResult(success=False, message="no match")
FILLED = OrderResult(success=True, order_id="o-1")


class TestRetryUntil:
    """Tests for retry_until."""

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self):
        clock = ManualClock()
        action = Script(FILLED)

        outcome = await retry_until(action, attempts=5, delay=1.5, sleep=clock.sleep)

        assert outcome.status == RetryStatus.SUCCEEDED
        assert outcome.attempts == 1
        assert outcome.result is FILLED
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_failed_results_with_fixed_spacing(self):
        clock = ManualClock()
        action = Script(FAILED, FAILED, FILLED)

        outcome = await retry_until(action, attempts=5, delay=1.5, sleep=clock.sleep)

        assert outcome.succeeded
        assert outcome.attempts == 3
        assert clock.sleeps == [1.5, 1.5]

    @pytest.mark.asyncio
    async def test_exhausted(self):
        clock = ManualClock()
        action = Script(FAILED, FAILED, FAILED)

        outcome = await retry_until(action, attempts=3, delay=1.0, sleep=clock.sleep)

        assert outcome.exhausted
        assert outcome.attempts == 3
        assert action.calls == 3

    @pytest.mark.asyncio
    async def test_exceptions_are_retried(self):
        clock = ManualClock()
        action = Script(TransientGatewayError("timeout"), FILLED)

        outcome = await retry_until(action, attempts=3, delay=1.0, sleep=clock.sleep)

        assert outcome.succeeded
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_exhausted_keeps_last_error(self):
        clock = ManualClock()
        action = Script(TransientGatewayError("a"), TransientGatewayError("b"))

        outcome = await retry_until(action, attempts=2, delay=1.0, sleep=clock.sleep)

        assert outcome.exhausted
        assert str(outcome.error) == "b"

    @pytest.mark.asyncio
    async def test_give_up_on_reraises_immediately(self):
        clock = ManualClock()
        action = Script(InvalidOrderError("invalid price"), FILLED)

        with pytest.raises(InvalidOrderError):
            await retry_until(
                action, attempts=5, delay=1.0, give_up_on=(InvalidOrderError,), sleep=clock.sleep
            )
        assert action.calls == 1

    @pytest.mark.asyncio
    async def test_abort_when_price_recovers(self):
        """Sell retry stops once the price climbs back above the stop-loss."""
        clock = ManualClock()
        action = Script(FAILED, FAILED, FAILED, FAILED)
        prices = [0.80, 0.99]
        stop_loss = 0.85

        async def recovered():
            return prices.pop(0) > stop_loss

        outcome = await retry_until(
            action, attempts=4, delay=1.0, should_abort=recovered, sleep=clock.sleep
        )

        assert outcome.aborted
        assert outcome.attempts == 2
        assert action.calls == 2

    @pytest.mark.asyncio
    async def test_abort_not_checked_before_first_attempt(self):
        clock = ManualClock()
        checks = []

        async def never():
            checks.append(True)
            return False

        await retry_until(Script(FILLED), attempts=3, delay=1.0, should_abort=never, sleep=clock.sleep)

        assert checks == []

    @pytest.mark.asyncio
    async def test_before_attempt_runs_every_attempt(self):
        clock = ManualClock()
        hooks = []

        async def refresh():
            hooks.append(clock.now())

        await retry_until(
            Script(FAILED, FILLED), attempts=3, delay=2.0, before_attempt=refresh, sleep=clock.sleep
        )

        assert hooks == [0.0, 2.0]


class TestDeferredJobQueue:
    """Tests for the deferred job queue."""

    @pytest.mark.asyncio
    async def test_job_runs_only_when_due(self):
        clock = ManualClock(start=100.0)
        queue = DeferredJobQueue(clock)
        ran = []

        async def job():
            ran.append(clock.now())

        queue.schedule(7.0, job, name="hedge-sells")

        assert await queue.run_due() == 0
        clock.advance(6.9)
        assert await queue.run_due() == 0
        clock.advance(0.1)
        assert await queue.run_due() == 1
        assert ran == [pytest.approx(107.0)]
        assert queue.pending_count == 0
        assert queue.completed == 1

    @pytest.mark.asyncio
    async def test_jobs_run_in_due_order(self):
        clock = ManualClock()
        queue = DeferredJobQueue(clock)
        order = []

        def make(name):
            async def job():
                order.append(name)
            return job

        queue.schedule(5.0, make("late"))
        queue.schedule(1.0, make("early"))
        clock.advance(1.0)
        await queue.run_due()
        clock.advance(4.0)
        await queue.run_due()

        assert order == ["early", "late"]

    @pytest.mark.asyncio
    async def test_failing_job_is_isolated(self):
        clock = ManualClock()
        queue = DeferredJobQueue(clock)
        ran = []

        async def bad():
            raise RuntimeError("boom")

        async def good():
            ran.append(True)

        queue.schedule(0.0, bad)
        queue.schedule(0.0, good)

        assert await queue.run_due() == 2
        assert ran == [True]
        assert queue.failed == 1
        assert queue.completed == 1

    @pytest.mark.asyncio
    async def test_run_due_waits_for_jobs(self):
        clock = ManualClock()
        queue = DeferredJobQueue(clock)
        done = []

        async def slow():
            await asyncio.sleep(0)
            done.append(True)

        queue.schedule(0.0, slow)

        assert await queue.run_due() == 1
        assert done == [True]
        assert queue.completed == 1
