"""Tests for KeyedLocks, the operation lock file and event delivery."""

import asyncio

import pytest

from hoard.events import RecordingEventSink, StageEvent, safe_emit
from hoard.models.enums import InstallStage
from hoard.services.locks import KeyedLocks, OperationLock


@pytest.mark.asyncio
async def test_same_key_serializes():
    locks = KeyedLocks()
    order = []

    async def worker(name):
        async with locks.hold([("app", "default")]):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_different_keys_run_concurrently():
    locks = KeyedLocks()
    inside = asyncio.Event()

    async def first():
        async with locks.hold([("a", "default")]):
            await inside.wait()

    async def second():
        async with locks.hold([("b", "default")]):
            inside.set()

    await asyncio.wait_for(asyncio.gather(first(), second()), timeout=1)


@pytest.mark.asyncio
async def test_overlapping_sets_do_not_deadlock():
    locks = KeyedLocks()

    async def take(keys):
        async with locks.hold(keys):
            await asyncio.sleep(0)

    await asyncio.wait_for(
        asyncio.gather(
            take([("a", "p"), ("b", "p")]),
            take([("b", "p"), ("a", "p")]),
        ),
        timeout=1,
    )
    assert not locks.locked(("a", "p"))


@pytest.mark.asyncio
async def test_released_on_error():
    locks = KeyedLocks()
    try:
        async with locks.hold([("a", "p")]):
            raise ValueError
    except ValueError:
        pass
    assert not locks.locked(("a", "p"))


# ---------------------------------------------------------------------------
# OperationLock
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_shared_holders_run_side_by_side(tmp_path):
    path = tmp_path / "hoard.lock"
    first, second = OperationLock(path), OperationLock(path)

    async with first.shared():
        await asyncio.wait_for(_enter(second.shared()), timeout=1)


@pytest.mark.asyncio
async def test_exclusive_waits_for_shared_holder(tmp_path):
    path = tmp_path / "hoard.lock"
    installing, reconciling = OperationLock(path, poll_interval=0.01), OperationLock(path, poll_interval=0.01)
    order = []

    async def reconcile():
        async with reconciling.exclusive():
            order.append("reconcile")

    async with installing.shared():
        waiter = asyncio.create_task(reconcile())
        await asyncio.sleep(0.05)
        assert not waiter.done()
        order.append("install-done")

    await asyncio.wait_for(waiter, timeout=1)
    assert order == ["install-done", "reconcile"]


@pytest.mark.asyncio
async def test_lock_without_path_is_a_no_op():
    lock = OperationLock(None)
    async with lock.exclusive():
        async with lock.exclusive():
            pass


async def _enter(hold):
    async with hold:
        pass


def test_safe_emit_ignores_sink_errors():
    class Broken:
        def emit(self, event):
            raise RuntimeError("display gone")

    event = StageEvent(package="main/app@1", profile="default", stage=InstallStage.STAGING)
    safe_emit(Broken(), event)

    sink = RecordingEventSink()
    safe_emit(sink, event)
    assert sink.stages_for("main/app@1") == [InstallStage.STAGING]
