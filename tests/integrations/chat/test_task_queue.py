from __future__ import annotations

import asyncio

import pytest

from agent_relay.integrations.chat.task_queue import ConversationTaskQueue


@pytest.mark.anyio
async def test_jobs_for_one_conversation_run_in_order() -> None:
    queue = ConversationTaskQueue()
    gate = asyncio.Event()
    order: list[str] = []

    async def first() -> None:
        await gate.wait()
        order.append("first")

    async def make(name: str) -> None:
        order.append(name)

    started = await queue.submit("c1", first, label="m1")
    second = await queue.submit("c1", lambda: make("second"), label="m2")
    third = await queue.submit("c1", lambda: make("third"), label="m3")

    assert started.queued is False
    assert started.position == 0
    assert (second.status, second.position) == ("queued", 1)
    assert (third.status, third.position) == ("queued", 2)
    assert queue.is_busy("c1") is True
    assert queue.pending_count("c1") == 2

    gate.set()
    await asyncio.wait_for(queue.wait_idle(), timeout=5)

    assert order == ["first", "second", "third"]
    assert queue.is_busy("c1") is False
    assert queue.active_conversations == 0


@pytest.mark.anyio
async def test_different_conversations_run_in_parallel() -> None:
    queue = ConversationTaskQueue()
    both_running = asyncio.Event()
    running: set[str] = set()

    def job(name: str):
        async def _run() -> None:
            running.add(name)
            if len(running) == 2:
                both_running.set()
            await asyncio.wait_for(both_running.wait(), timeout=5)

        return _run

    a = await queue.submit("c1", job("c1"))
    b = await queue.submit("c2", job("c2"))

    assert a.queued is False and b.queued is False
    await asyncio.wait_for(queue.wait_idle(), timeout=5)
    assert running == {"c1", "c2"}


@pytest.mark.anyio
async def test_failed_job_does_not_block_the_queue() -> None:
    queue = ConversationTaskQueue()
    ran: list[str] = []

    async def boom() -> None:
        raise RuntimeError("boom")

    async def after() -> None:
        ran.append("after")

    await queue.submit("c1", boom)
    await queue.submit("c1", after)
    await asyncio.wait_for(queue.wait_idle(), timeout=5)

    assert ran == ["after"]


@pytest.mark.anyio
async def test_drain_all_drops_waiting_jobs_only() -> None:
    queue = ConversationTaskQueue()
    gate = asyncio.Event()
    ran: list[str] = []

    async def blocker() -> None:
        await gate.wait()
        ran.append("blocker")

    async def waiting() -> None:
        ran.append("waiting")

    await queue.submit("c1", blocker)
    await queue.submit("c1", waiting)
    await queue.submit("c1", waiting)

    assert await queue.drain_all("c1") == 2
    assert await queue.drain_all("c1") == 0
    assert queue.pending_count("c1") == 0

    gate.set()
    await asyncio.wait_for(queue.wait_idle(), timeout=5)
    assert ran == ["blocker"]


@pytest.mark.anyio
async def test_shutdown_cancels_running_workers() -> None:
    queue = ConversationTaskQueue()
    cancelled = asyncio.Event()

    async def forever() -> None:
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    await queue.submit("c1", forever)
    await asyncio.sleep(0)
    await queue.shutdown()

    assert cancelled.is_set()
    assert queue.active_conversations == 0
    await asyncio.wait_for(queue.wait_idle(), timeout=1)
