"""Cooperative cancellation for channel workers."""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

DEFAULT_POLL_INTERVAL = 0.2  # seconds


class Cancelled(Exception):
    """Raised inside a worker once its job was stopped or its run superseded."""


class CancellationToken:
    """Stop flag threaded through every long wait a worker performs.

    Waits are split into slices of at most ``poll_interval`` seconds and the
    flag is checked after each one, so a stop is observed within that bound
    instead of when the wait would have ended.
    """

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.poll_interval = poll_interval
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled()

    async def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(self.poll_interval, remaining))
            self.raise_if_cancelled()

    async def retry_until(
        self,
        fn: Callable[[], Awaitable[T]],
        timeout: float = 45.0,
        interval: float = 1.5,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> T:
        """Call fn until it returns without raising, or re-raise its last error after timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last_error: Optional[Exception] = None

        while loop.time() < deadline:
            self.raise_if_cancelled()
            try:
                return await fn()
            except Cancelled:
                raise
            except Exception as e:
                last_error = e
                if on_error:
                    on_error(e)
                await self.sleep(interval)

        if last_error is None:
            raise TimeoutError(f"Gave up after {timeout}s")
        raise last_error
