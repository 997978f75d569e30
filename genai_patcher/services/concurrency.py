"""Bounded concurrency primitives - semaphore, cancellation token and runner."""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from types import TracebackType
from typing import TypeVar

from genai_patcher.core.exceptions import ProcessingCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Cooperative cancellation signal shared by every task of one run."""

    def __init__(self) -> None:
        """Initialize an un-cancelled token."""
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Reason given to cancel(), if any."""
        return self._reason

    def cancel(self, reason: str = "stopped by user") -> None:
        """
        Flip the token. Idempotent.

        Args:
            reason (str): Human readable reason.
        """
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """
        Raise if the token has been cancelled.

        Raises:
            ProcessingCancelled: If cancelled.
        """
        if self._event.is_set():
            raise ProcessingCancelled(self._reason or "cancelled")

    async def wait(self) -> None:
        """Wait until the token is cancelled."""
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await something, abandoning it as soon as the token fires.

        The underlying task is cancelled when the token fires first; its
        result, if it ever arrives, is discarded.

        Args:
            awaitable (Awaitable[T]): Operation to run.

        Returns:
            T: The operation's result.

        Raises:
            ProcessingCancelled: If the token fired before the operation settled.
        """
        task = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            raise ProcessingCancelled(self._reason or "cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                # Let the abandoned task unwind before reporting cancellation
                await asyncio.gather(task, return_exceptions=True)

        if self.cancelled or task.cancelled():
            raise ProcessingCancelled(self._reason or "cancelled")
        return task.result()

    async def sleep(self, delay: float) -> None:
        """
        Sleep unless cancelled first.

        Args:
            delay (float): Seconds to sleep.

        Raises:
            ProcessingCancelled: If the token fires during the sleep.
        """
        if delay <= 0:
            self.raise_if_cancelled()
            return
        await self.run(asyncio.sleep(delay))


class AsyncSemaphore:
    """Counting semaphore with a FIFO waiter queue."""

    def __init__(self, permits: int) -> None:
        """
        Initialize the semaphore.

        Args:
            permits (int): Number of concurrent holders allowed.

        Raises:
            ValueError: If permits is less than 1.
        """
        if permits < 1:
            raise ValueError(f"Semaphore needs at least one permit, got {permits}")
        self._permits = permits
        self._capacity = permits
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def capacity(self) -> int:
        """Total number of permits."""
        return self._capacity

    @property
    def available(self) -> int:
        """Permits not currently held."""
        return self._permits

    @property
    def waiting(self) -> int:
        """Number of queued acquirers."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Take a permit, waiting in FIFO order when none is free."""
        if self._permits > 0 and not self._waiters:
            self._permits -= 1
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # The permit was handed over just before cancellation
                self.release()
            else:
                try:
                    self._waiters.remove(future)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Return a permit, handing it directly to the oldest waiter if any."""
        while self._waiters:
            future = self._waiters.popleft()
            if not future.done():
                future.set_result(None)
                return
        self._permits += 1

    async def __aenter__(self) -> "AsyncSemaphore":
        """Acquire on context entry."""
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Release on context exit."""
        self.release()


async def run_with_concurrency(
    items: Iterable[T],
    limit: int,
    task: Callable[[T], Awaitable[R]],
    token: CancellationToken,
    stagger: float = 0.0,
) -> list[R]:
    """
    Run task over items with at most `limit` invocations in flight.

    Items are admitted in input order; the next one is admitted as soon as
    any in-flight task settles. Admission stops as soon as the token is
    cancelled, and results of tasks settling after that are discarded.

    A task that raises also stops admission: in-flight tasks are allowed to
    settle and the first exception is re-raised. Tasks that must not abort
    their siblings should catch their own errors.

    Args:
        items (Iterable[T]): Work items.
        limit (int): Maximum number of concurrent task invocations.
        task (Callable[[T], Awaitable[R]]): Coroutine function run per item.
        token (CancellationToken): Shared cancellation token.
        stagger (float): Optional delay in seconds before each admission.

    Returns:
        list[R]: Results in completion order.

    Raises:
        ValueError: If limit is less than 1.
    """
    if limit < 1:
        raise ValueError(f"Concurrency limit must be at least 1, got {limit}")

    results: list[R] = []
    errors: list[BaseException] = []
    executing: set[asyncio.Future[R]] = set()

    def settle(future: asyncio.Future[R]) -> None:
        executing.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            if not isinstance(error, ProcessingCancelled):
                errors.append(error)
            return
        if not token.cancelled:
            results.append(future.result())

    for item in items:
        if token.cancelled or errors:
            break
        if stagger > 0:
            try:
                await token.sleep(stagger)
            except ProcessingCancelled:
                break

        future = asyncio.ensure_future(task(item))
        executing.add(future)
        future.add_done_callback(settle)

        if len(executing) >= limit:
            await asyncio.wait(set(executing), return_when=asyncio.FIRST_COMPLETED)

    if executing:
        await asyncio.wait(set(executing))

    if token.cancelled:
        logger.info(f"Run cancelled with {len(results)} settled results")
    if errors:
        raise errors[0]
    return results
