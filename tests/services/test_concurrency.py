"""Tests for the bounded concurrency primitives."""

import asyncio

import pytest

from genai_patcher.core.exceptions import ProcessingCancelled
from genai_patcher.services.concurrency import (
    AsyncSemaphore,
    CancellationToken,
    run_with_concurrency,
)


class InFlightCounter:
    """Tracks how many calls are running at once."""

    def __init__(self) -> None:
        self.current = 0
        self.peak = 0
        self.started: list[int] = []

    async def run(self, item: int, delay: float = 0.01) -> int:
        self.started.append(item)
        self.current += 1
        self.peak = max(self.peak, self.current)
        try:
            await asyncio.sleep(delay)
        finally:
            self.current -= 1
        return item * 10


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_initially_not_cancelled(self) -> None:
        """
        Test that a new token is not cancelled.

        Returns:
            None
        """
        token = CancellationToken()
        assert token.cancelled is False
        assert token.reason is None
        token.raise_if_cancelled()

    def test_cancel_is_idempotent(self) -> None:
        """
        Test that the first reason sticks.

        Returns:
            None
        """
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled is True
        assert token.reason == "first"

    def test_raise_if_cancelled(self) -> None:
        """
        Test that a cancelled token raises ProcessingCancelled.

        Returns:
            None
        """
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ProcessingCancelled):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_run_returns_result(self) -> None:
        """
        Test that run returns the awaited value.

        Returns:
            None
        """
        token = CancellationToken()

        async def work() -> str:
            return "done"

        assert await token.run(work()) == "done"

    @pytest.mark.asyncio
    async def test_run_abandons_on_cancel(self) -> None:
        """
        Test that cancelling the token abandons a pending operation.

        Returns:
            None
        """
        token = CancellationToken()
        finished = asyncio.Event()

        async def slow() -> None:
            await asyncio.sleep(10)
            finished.set()

        async def cancel_soon() -> None:
            await asyncio.sleep(0.01)
            token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(ProcessingCancelled):
            await token.run(slow())
        await canceller
        assert not finished.is_set()

    @pytest.mark.asyncio
    async def test_run_unwinds_operation_before_raising(self) -> None:
        """
        Test that the abandoned operation has finished unwinding when run raises.

        Returns:
            None
        """
        token = CancellationToken()
        unwound = asyncio.Event()

        async def slow() -> None:
            try:
                await asyncio.sleep(10)
            finally:
                unwound.set()

        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(ProcessingCancelled):
            await token.run(slow())
        assert unwound.is_set()

    @pytest.mark.asyncio
    async def test_run_raises_when_cancelled_before_start(self) -> None:
        """
        Test that an already cancelled token never starts the operation.

        Returns:
            None
        """
        token = CancellationToken()
        token.cancel()
        started = asyncio.Event()

        async def work() -> None:
            started.set()

        with pytest.raises(ProcessingCancelled):
            await token.run(work())
        await asyncio.sleep(0)
        assert not started.is_set()

    @pytest.mark.asyncio
    async def test_run_propagates_errors(self) -> None:
        """
        Test that errors of the operation propagate unchanged.

        Returns:
            None
        """
        token = CancellationToken()

        async def broken() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await token.run(broken())

    @pytest.mark.asyncio
    async def test_sleep_interrupted(self) -> None:
        """
        Test that sleep raises as soon as the token fires.

        Returns:
            None
        """
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(ProcessingCancelled):
            await token.sleep(10)


class TestAsyncSemaphore:
    """Tests for AsyncSemaphore."""

    def test_invalid_permits_raises(self) -> None:
        """
        Test that fewer than one permit is rejected.

        Returns:
            None
        """
        with pytest.raises(ValueError):
            AsyncSemaphore(0)

    @pytest.mark.asyncio
    async def test_acquire_and_release(self) -> None:
        """
        Test that permits are counted.

        Returns:
            None
        """
        semaphore = AsyncSemaphore(2)
        await semaphore.acquire()
        assert semaphore.available == 1
        semaphore.release()
        assert semaphore.available == 2

    @pytest.mark.asyncio
    async def test_waiters_served_in_fifo_order(self) -> None:
        """
        Test that queued acquirers get permits in arrival order.

        Returns:
            None
        """
        semaphore = AsyncSemaphore(1)
        await semaphore.acquire()
        order: list[int] = []

        async def waiter(index: int) -> None:
            await semaphore.acquire()
            order.append(index)
            semaphore.release()

        tasks = [asyncio.create_task(waiter(index)) for index in range(3)]
        await asyncio.sleep(0)
        assert semaphore.waiting == 3
        semaphore.release()
        await asyncio.gather(*tasks)
        assert order == [0, 1, 2]
        assert semaphore.available == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_leak_permit(self) -> None:
        """
        Test that a cancelled waiter leaves the queue without taking a permit.

        Returns:
            None
        """
        semaphore = AsyncSemaphore(1)
        await semaphore.acquire()
        task = asyncio.create_task(semaphore.acquire())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        semaphore.release()
        assert semaphore.available == 1
        assert semaphore.waiting == 0

    @pytest.mark.asyncio
    async def test_context_manager(self) -> None:
        """
        Test that the context manager acquires and releases.

        Returns:
            None
        """
        semaphore = AsyncSemaphore(1)
        async with semaphore:
            assert semaphore.available == 0
        assert semaphore.available == 1


class TestRunWithConcurrency:
    """Tests for run_with_concurrency function."""

    @pytest.mark.asyncio
    async def test_invalid_limit_raises(self) -> None:
        """
        Test that a limit below one is rejected.

        Returns:
            None
        """
        with pytest.raises(ValueError):
            await run_with_concurrency([1], 0, InFlightCounter().run, CancellationToken())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 2, 3, 10])
    async def test_never_exceeds_limit(self, limit: int) -> None:
        """
        Test that in-flight tasks never exceed the limit.

        Args:
            limit (int): Concurrency limit.

        """
        counter = InFlightCounter()
        results = await run_with_concurrency(range(8), limit, counter.run, CancellationToken())
        assert counter.peak == min(limit, 8)
        assert sorted(results) == [item * 10 for item in range(8)]

    @pytest.mark.asyncio
    async def test_admits_in_input_order(self) -> None:
        """
        Test that items start in input order.

        Returns:
            None
        """
        counter = InFlightCounter()
        await run_with_concurrency([5, 3, 9, 1], 2, counter.run, CancellationToken())
        assert counter.started == [5, 3, 9, 1]

    @pytest.mark.asyncio
    async def test_limit_one_is_serial(self) -> None:
        """
        Test that a limit of one runs strictly one at a time.

        Returns:
            None
        """
        counter = InFlightCounter()
        await run_with_concurrency(range(4), 1, counter.run, CancellationToken())
        assert counter.peak == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_admission(self) -> None:
        """
        Test that no new task starts after cancellation and late results are discarded.

        Returns:
            None
        """
        token = CancellationToken()
        counter = InFlightCounter()

        async def task(item: int) -> int:
            if item == 1:
                token.cancel()
            return await counter.run(item)

        results = await run_with_concurrency(range(10), 2, task, token)
        assert counter.started == [0, 1]
        assert results == []

    @pytest.mark.asyncio
    async def test_cancelled_before_start_runs_nothing(self) -> None:
        """
        Test that a cancelled token admits nothing.

        Returns:
            None
        """
        token = CancellationToken()
        token.cancel()
        counter = InFlightCounter()
        assert await run_with_concurrency(range(3), 2, counter.run, token) == []
        assert counter.started == []

    @pytest.mark.asyncio
    async def test_error_stops_admission_and_reraises(self) -> None:
        """
        Test that a failing task stops admission, lets in-flight tasks settle and re-raises.

        Returns:
            None
        """
        counter = InFlightCounter()

        async def task(item: int) -> int:
            if item == 0:
                raise RuntimeError("first failed")
            return await counter.run(item)

        with pytest.raises(RuntimeError, match="first failed"):
            await run_with_concurrency(range(10), 2, task, CancellationToken())
        assert counter.current == 0
        assert len(counter.started) < 9

    @pytest.mark.asyncio
    async def test_processing_cancelled_is_not_an_error(self) -> None:
        """
        Test that a task raising ProcessingCancelled does not fail the run.

        Returns:
            None
        """

        async def task(item: int) -> int:
            if item == 1:
                raise ProcessingCancelled("stop")
            return item

        results = await run_with_concurrency(range(3), 3, task, CancellationToken())
        assert sorted(results) == [0, 2]

    @pytest.mark.asyncio
    async def test_stagger_delays_admission(self) -> None:
        """
        Test that stagger spaces out task starts.

        Returns:
            None
        """
        loop = asyncio.get_running_loop()
        starts: list[float] = []

        async def task(item: int) -> int:
            starts.append(loop.time())
            return item

        await run_with_concurrency(range(3), 3, task, CancellationToken(), stagger=0.02)
        assert starts[2] - starts[0] >= 0.03
