"""
Tests for async_utils module.

Covers run_sync, CancelToken, race_cancel and gather_limited.
"""

import asyncio
import functools

from n8n_backup.core.async_utils import (
    CancelToken,
    gather_limited,
    race_cancel,
    run_sync,
)


def _sync_add(a: int, b: int) -> int:
    """Simple sync function for testing."""
    return a + b


async def test_run_sync_calls_function():
    """run_sync delegates to asyncio.to_thread with correct args."""
    result = await run_sync(_sync_add, 3, 4)
    assert result == 7


async def test_run_sync_passes_kwargs():
    """run_sync forwards keyword arguments."""

    def _kw_func(*, name: str) -> str:
        return f"hello {name}"

    result = await run_sync(_kw_func, name="world")
    assert result == "hello world"


# ---------------------------------------------------------------------------
# CancelToken
# ---------------------------------------------------------------------------


async def test_cancel_token_keeps_first_reason():
    token = CancelToken()
    assert not token.cancelled

    token.cancel("timeout")
    token.cancel("interrupt")

    assert token.cancelled
    assert token.reason == "timeout"


async def test_cancel_token_sleep_completes():
    token = CancelToken()
    assert await token.sleep(0.01) is True


async def test_cancel_token_sleep_interrupted():
    token = CancelToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")
    assert await asyncio.wait_for(token.sleep(10), timeout=2) is False


async def test_cancel_token_sleep_after_cancel_returns_immediately():
    token = CancelToken()
    token.cancel()
    assert await token.sleep(10) is False


# ---------------------------------------------------------------------------
# race_cancel
# ---------------------------------------------------------------------------


async def test_race_cancel_result_wins():
    token = CancelToken()

    async def _quick():
        return "done"

    assert await race_cancel(_quick(), token) == (True, "done")


async def test_race_cancel_token_wins():
    token = CancelToken()
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def _slow():
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    async def _cancel_soon():
        await started.wait()
        token.cancel("timeout")

    canceller = asyncio.ensure_future(_cancel_soon())
    completed, result = await race_cancel(_slow(), token)
    await canceller
    await asyncio.sleep(0.01)

    assert (completed, result) == (False, None)
    assert cancelled.is_set()


# ---------------------------------------------------------------------------
# gather_limited
# ---------------------------------------------------------------------------


async def test_gather_limited_preserves_order():
    """Results come back in factory order regardless of completion order."""

    async def _delayed(value: int, delay: float) -> int:
        await asyncio.sleep(delay)
        return value

    factories = [
        functools.partial(_delayed, 1, 0.03),
        functools.partial(_delayed, 2, 0.0),
        functools.partial(_delayed, 3, 0.01),
    ]
    assert await gather_limited(factories, limit=3) == [1, 2, 3]


async def test_gather_limited_bounds_concurrency():
    """No more than `limit` awaitables run at once."""
    in_flight = 0
    peak = 0

    async def _tracked() -> None:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1

    await gather_limited([_tracked] * 8, limit=2)
    assert peak == 2


async def test_gather_limited_empty():
    assert await gather_limited([], limit=4) == []
