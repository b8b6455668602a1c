"""Bounded admission gate for network operations.

Every network call made during a sync passes through a ``BoundedWorkQueue``:
at most ``max_concurrency`` operations are in flight, the rest wait in FIFO
order.  Failed operations can be retried with linear backoff, and a single
cancellation signal makes not-yet-started operations fail fast while letting
in-flight ones finish.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import TYPE_CHECKING, TypeVar

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


class WorkCancelledError(RuntimeError):
    """Raised for operations that had not started when the queue was cancelled."""


class BoundedWorkQueue:
    """Counting semaphore with FIFO waiters, retry and cooperative cancellation.

    ``timeout`` (seconds) bounds each individual operation; exceeding it raises
    ``TimeoutError``, which ``run_with_retry`` treats like any other failure.
    """

    def __init__(
        self,
        max_concurrency: int,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if max_concurrency < 1:
            msg = f"max_concurrency must be >= 1, got {max_concurrency}"
            raise ValueError(msg)
        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self._in_flight = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._cancel_event = cancel_event or asyncio.Event()

    # -- Semaphore -------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def acquire(self) -> None:
        if self._in_flight < self.max_concurrency and not self._waiters:
            self._in_flight += 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # A slot handed to us just before cancellation must be passed on.
            if waiter.done() and not waiter.cancelled():
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        # Hand the slot straight to the next waiter so it cannot be stolen.
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._in_flight -= 1

    # -- Cancellation ----------------------------------------------------------

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # -- Execution -------------------------------------------------------------

    async def run(
        self,
        op: Callable[[], Awaitable[T]],
        on_timing: Callable[[float], None] | None = None,
    ) -> T:
        """Run ``op`` once inside a slot.  The slot is always released."""
        await self.acquire()
        start = time.perf_counter()
        try:
            if self.cancelled:
                raise WorkCancelledError("Work queue cancelled")
            if self.timeout is None:
                return await op()
            return await asyncio.wait_for(op(), timeout=self.timeout)
        finally:
            self.release()
            if on_timing is not None:
                on_timing(time.perf_counter() - start)

    async def run_with_retry(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        max_attempts: int = 3,
        base_delay: float = 0.2,
        operation_name: str = "operation",
        give_up_on: tuple[type[BaseException], ...] = (),
        on_timing: Callable[[float], None] | None = None,
    ) -> T:
        """Run ``op`` up to ``max_attempts`` times.

        Attempt ``n`` that fails waits ``base_delay * n`` before the next one.
        The last attempt's exception propagates unchanged.  Cancellation and
        exceptions listed in ``give_up_on`` are raised without retrying.
        """
        if self.cancelled:
            raise WorkCancelledError("Work queue cancelled")
        attempts = max(1, max_attempts)

        for attempt in range(1, attempts + 1):
            try:
                result = await self.run(op, on_timing)
            except (WorkCancelledError, *give_up_on):
                raise
            except Exception as exc:
                if attempt == attempts:
                    if attempts > 1:
                        logger.error("{} failed after {} attempts, giving up: {}", operation_name, attempts, exc)
                    raise
                wait = base_delay * attempt
                logger.warning(
                    "{} failed (attempt {}/{}), retrying in {:.2f}s: {}",
                    operation_name,
                    attempt,
                    attempts,
                    wait,
                    exc,
                )
                await asyncio.sleep(wait)
            else:
                if attempt > 1:
                    logger.info("{} succeeded on attempt {}/{}", operation_name, attempt, attempts)
                return result

        # Unreachable: the loop either returns or raises.
        raise AssertionError(operation_name)
