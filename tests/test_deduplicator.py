"""Unit tests for SyncDeduplicator."""
import asyncio

import pytest

from sync.deduplicator import SyncDeduplicator


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_run():
    """Test that N concurrent callers trigger a single operation."""
    dedup = SyncDeduplicator()
    release = asyncio.Event()
    runs = []

    async def operation():
        runs.append(1)
        await release.wait()
        return object()

    callers = [
        asyncio.ensure_future(dedup.run_exclusive('feed', operation))
        for _ in range(5)
    ]
    await asyncio.sleep(0)
    assert dedup.in_flight('feed')

    release.set()
    results = await asyncio.gather(*callers)

    assert len(runs) == 1
    assert all(result is results[0] for result in results)
    assert not dedup.in_flight('feed')


@pytest.mark.asyncio
async def test_marker_cleared_after_completion():
    """Test that a call after completion starts a fresh run."""
    dedup = SyncDeduplicator()
    counter = iter(range(10))

    async def operation():
        return next(counter)

    first = await dedup.run_exclusive('feed', operation)
    second = await dedup.run_exclusive('feed', operation)

    assert (first, second) == (0, 1)
    assert not dedup.in_flight('feed')


@pytest.mark.asyncio
async def test_marker_cleared_after_exception():
    """Test that a failing operation releases its key for every caller."""
    dedup = SyncDeduplicator()

    async def failing():
        await asyncio.sleep(0)
        raise RuntimeError('boom')

    results = await asyncio.gather(
        dedup.run_exclusive('feed', failing),
        dedup.run_exclusive('feed', failing),
        return_exceptions=True
    )

    assert all(isinstance(r, RuntimeError) for r in results)
    assert results[0] is results[1]
    assert not dedup.in_flight('feed')


@pytest.mark.asyncio
async def test_different_keys_run_independently():
    dedup = SyncDeduplicator()
    started = []
    release = asyncio.Event()

    def make_operation(key):
        async def operation():
            started.append(key)
            await release.wait()
            return key
        return operation

    tasks = [
        asyncio.ensure_future(dedup.run_exclusive(key, make_operation(key)))
        for key in ('a', 'b')
    ]
    await asyncio.sleep(0.01)
    assert sorted(started) == ['a', 'b']

    release.set()
    assert await asyncio.gather(*tasks) == ['a', 'b']


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_run():
    """Test that cancelling one waiter leaves the others their result."""
    dedup = SyncDeduplicator()
    release = asyncio.Event()

    async def operation():
        await release.wait()
        return 'done'

    first = asyncio.ensure_future(dedup.run_exclusive('feed', operation))
    second = asyncio.ensure_future(dedup.run_exclusive('feed', operation))
    await asyncio.sleep(0)

    first.cancel()
    release.set()

    assert await second == 'done'
    with pytest.raises(asyncio.CancelledError):
        await first
