"""Async utilities for bridging blocking HTTP calls into the engine's event loop."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Transport clients are blocking (``requests``); every network round-trip
    issued from the engine goes through here.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


class CancelToken:
    """Cooperative cancellation signal shared by one run.

    Setting the token stops new reconcile calls from being issued and
    interrupts retry back-off sleeps.  Already-running thread calls are not
    interrupted.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.warning("Run cancelled: %s", reason)
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep for *delay* seconds unless cancelled first.

        Returns:
            ``True`` if the full delay elapsed, ``False`` if cancelled.
        """
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False


async def race_cancel(
    awaitable: Awaitable[T], token: CancelToken
) -> tuple[bool, T | None]:
    """Await *awaitable* unless *token* fires first.

    Returns:
        ``(True, result)`` when the awaitable completed, ``(False, None)``
        when the token was cancelled first (the awaitable is cancelled).
    """
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        waiter.cancel()
    if task in done:
        return True, task.result()
    task.cancel()
    return False, None


async def gather_limited(
    factories: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
) -> list[T]:
    """Run coroutine factories concurrently, at most *limit* at a time.

    Factories are invoked lazily once a slot is free.  Returns results in
    input order.  Exceptions propagate from the first failure.

    Args:
        factories: Zero-argument callables returning awaitables.
        limit: Maximum number of awaitables in flight.

    Returns:
        List of results in the same order as *factories*.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _bounded(factory: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await factory()

    return list(await asyncio.gather(*(_bounded(f) for f in factories)))
