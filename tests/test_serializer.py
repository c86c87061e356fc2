"""
Conversation serializer tests.

Verifies:
- tasks under one key run in submission order, never interleaved
- a failed task does not poison the chain
- keyless tasks and different keys run concurrently
- registry entries disappear once a chain drains
"""
import asyncio

import pytest

from planning_pipeline.serializer import ConversationSerializer


def _recorder(log, name, delay=0.0, fail=False):
    async def task():
        log.append(f"{name}:start")
        await asyncio.sleep(delay)
        log.append(f"{name}:end")
        if fail:
            raise RuntimeError(f"{name} failed")
        return name

    return task


@pytest.mark.asyncio
async def test_same_key_runs_in_submission_order():
    serializer = ConversationSerializer()
    log = []

    results = await asyncio.gather(
        serializer.run("conv_1", _recorder(log, "a", delay=0.03)),
        serializer.run("conv_1", _recorder(log, "b", delay=0.01)),
        serializer.run("conv_1", _recorder(log, "c")),
    )

    assert results == ["a", "b", "c"]
    assert log == ["a:start", "a:end", "b:start", "b:end", "c:start", "c:end"]


@pytest.mark.asyncio
async def test_failure_does_not_poison_chain():
    serializer = ConversationSerializer()
    log = []

    results = await asyncio.gather(
        serializer.run("conv_1", _recorder(log, "a", delay=0.01, fail=True)),
        serializer.run("conv_1", _recorder(log, "b")),
        return_exceptions=True,
    )

    assert isinstance(results[0], RuntimeError)
    assert results[1] == "b"
    assert log == ["a:start", "a:end", "b:start", "b:end"]


@pytest.mark.asyncio
async def test_different_keys_interleave():
    serializer = ConversationSerializer()
    log = []

    await asyncio.gather(
        serializer.run("conv_1", _recorder(log, "a", delay=0.03)),
        serializer.run("conv_2", _recorder(log, "b", delay=0.01)),
    )

    assert log.index("b:end") < log.index("a:end")


@pytest.mark.asyncio
async def test_no_key_runs_immediately():
    serializer = ConversationSerializer()
    log = []

    await asyncio.gather(
        serializer.run(None, _recorder(log, "a", delay=0.03)),
        serializer.run(None, _recorder(log, "b", delay=0.01)),
    )

    assert log.index("b:end") < log.index("a:end")
    assert serializer.active_keys() == []


@pytest.mark.asyncio
async def test_registry_is_cleaned_up():
    serializer = ConversationSerializer()
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocking():
        started.set()
        await release.wait()

    pending = asyncio.ensure_future(serializer.run("conv_1", blocking))
    await started.wait()

    assert serializer.is_busy("conv_1")
    assert serializer.active_keys() == ["conv_1"]

    release.set()
    await pending

    assert not serializer.is_busy("conv_1")
    assert serializer.active_keys() == []


@pytest.mark.asyncio
async def test_registry_cleaned_after_failure():
    serializer = ConversationSerializer()

    with pytest.raises(RuntimeError):
        await serializer.run("conv_1", _recorder([], "a", fail=True))

    assert serializer.active_keys() == []


@pytest.mark.asyncio
async def test_cancelled_waiter_keeps_order_for_successors():
    serializer = ConversationSerializer()
    log = []
    release = asyncio.Event()

    async def first():
        log.append("first:start")
        await release.wait()
        log.append("first:end")

    t1 = asyncio.ensure_future(serializer.run("conv_1", first))
    await asyncio.sleep(0)
    t2 = asyncio.ensure_future(serializer.run("conv_1", _recorder(log, "second")))
    await asyncio.sleep(0)
    t3 = asyncio.ensure_future(serializer.run("conv_1", _recorder(log, "third")))
    await asyncio.sleep(0)

    t2.cancel()
    await asyncio.sleep(0)
    release.set()
    await asyncio.gather(t1, t3)

    assert log == ["first:start", "first:end", "third:start", "third:end"]
    assert serializer.active_keys() == []


@pytest.mark.asyncio
async def test_drain_waits_for_queued_work():
    serializer = ConversationSerializer()
    log = []

    tasks = [
        asyncio.ensure_future(serializer.run("conv_1", _recorder(log, "a", delay=0.01))),
        asyncio.ensure_future(serializer.run("conv_2", _recorder(log, "b", delay=0.02))),
    ]
    await asyncio.sleep(0)
    await serializer.drain()

    assert sorted(log) == ["a:end", "a:start", "b:end", "b:start"]
    assert serializer.active_keys() == []
    await asyncio.gather(*tasks)
