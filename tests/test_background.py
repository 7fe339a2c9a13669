"""Tests for app/services/background.py -- periodic tasks, tracked tasks and keyed locks."""

import asyncio

import pytest

from app.services import background
from app.services.background import KeyedLock, PeriodicTask


# ---------------------------------------------------------------------------
# tracked tasks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_spawn_tracks_until_done():
    done = asyncio.Event()

    async def _work():
        await done.wait()

    background.spawn(_work(), name="test:work")
    assert background.pending_task_count() >= 1

    done.set()
    await background.drain(timeout=2)
    assert background.pending_task_count() == 0


@pytest.mark.asyncio
async def test_drain_waits_for_tasks_spawned_by_tasks():
    results = []

    async def _child():
        results.append("child")

    async def _parent():
        await asyncio.sleep(0)
        background.spawn(_child())

    background.spawn(_parent())
    await background.drain(timeout=2)
    assert results == ["child"]


@pytest.mark.asyncio
async def test_shutdown_all_cancels_in_flight_tasks():
    task = background.spawn(asyncio.sleep(60))

    await background.shutdown_all()

    assert task.cancelled()
    assert background.pending_task_count() == 0


# ---------------------------------------------------------------------------
# PeriodicTask
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_periodic_task_runs_repeatedly_and_stops():
    calls = []

    async def _tick():
        calls.append(1)

    ticker = PeriodicTask("test-tick", 0.01, _tick)
    await ticker.start()
    assert ticker.running
    await asyncio.sleep(0.1)
    await ticker.stop()

    assert len(calls) >= 2
    assert not ticker.running
    count = len(calls)
    await asyncio.sleep(0.05)
    assert len(calls) == count


@pytest.mark.asyncio
async def test_periodic_task_survives_errors():
    calls = []

    async def _flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")

    ticker = PeriodicTask("test-flaky", 0.01, _flaky)
    await ticker.start()
    await asyncio.sleep(0.1)
    await ticker.stop()

    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_periodic_task_runs_never_overlap():
    active = 0
    peak = 0

    async def _slow():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.03)
        active -= 1

    ticker = PeriodicTask("test-slow", 0.001, _slow)
    await ticker.start()
    await asyncio.sleep(0.15)
    await ticker.stop()

    assert peak == 1


@pytest.mark.asyncio
async def test_periodic_task_start_twice_is_noop():
    ticker = PeriodicTask("test-once", 10, lambda: asyncio.sleep(0))
    await ticker.start()
    first = ticker._task
    await ticker.start()
    assert ticker._task is first
    await ticker.stop()


# ---------------------------------------------------------------------------
# KeyedLock
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_keyed_lock_serialises_same_key():
    locks = KeyedLock()
    order = []

    async def _writer(name):
        async with locks.hold("build-1"):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    await asyncio.gather(_writer("poll"), _writer("webhook"))

    assert order in (
        ["poll:in", "poll:out", "webhook:in", "webhook:out"],
        ["webhook:in", "webhook:out", "poll:in", "poll:out"],
    )


@pytest.mark.asyncio
async def test_keyed_lock_different_keys_run_concurrently():
    locks = KeyedLock()
    inside = asyncio.Event()
    release = asyncio.Event()

    async def _holder():
        async with locks.hold("build-1"):
            inside.set()
            await release.wait()

    task = asyncio.create_task(_holder())
    await inside.wait()
    async with locks.hold("build-2"):
        assert len(locks) == 2
    release.set()
    await task


@pytest.mark.asyncio
async def test_keyed_lock_entries_dropped_after_use():
    locks = KeyedLock()
    async with locks.hold("build-1"):
        assert len(locks) == 1
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_released_on_error():
    locks = KeyedLock()
    with pytest.raises(ValueError):
        async with locks.hold("build-1"):
            raise ValueError("boom")
    assert len(locks) == 0
    async with locks.hold("build-1"):
        pass
