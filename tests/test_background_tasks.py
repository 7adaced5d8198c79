"""Tests for the bounded side-effect queue and background jobs."""

import asyncio

import pytest
from sqlalchemy import select

from zhort.db.models import ClickEvent
from zhort.services.background_tasks import SideEffectQueue, record_click_background


@pytest.mark.asyncio
async def test_queued_jobs_run_and_drain_on_shutdown():
    queue = SideEffectQueue(maxsize=10, workers=2)
    queue.start()
    done = []

    async def job(n):
        await asyncio.sleep(0)
        done.append(n)

    for n in range(5):
        assert queue.submit(f"job-{n}", lambda n=n: job(n))

    await queue.shutdown(timeout=5)

    assert sorted(done) == [0, 1, 2, 3, 4]
    assert not queue.running


@pytest.mark.asyncio
async def test_full_queue_drops_jobs():
    queue = SideEffectQueue(maxsize=1, workers=1)
    queue.start()
    release = asyncio.Event()

    async def blocker():
        await release.wait()

    assert queue.submit("blocker", blocker)
    await asyncio.sleep(0)  # let the worker take the blocker off the queue
    assert queue.submit("waiting", blocker)
    assert not queue.submit("overflow", blocker)
    assert queue.dropped == 1

    release.set()
    await queue.shutdown(timeout=5)


@pytest.mark.asyncio
async def test_failing_job_does_not_stop_worker():
    queue = SideEffectQueue(maxsize=10, workers=1)
    queue.start()
    done = []

    async def boom():
        raise RuntimeError("webhook endpoint exploded")

    async def ok():
        done.append(True)

    queue.submit("boom", boom)
    queue.submit("ok", ok)
    await queue.shutdown(timeout=5)

    assert done == [True]


@pytest.mark.asyncio
async def test_submit_after_shutdown_is_dropped():
    queue = SideEffectQueue(maxsize=10, workers=1)
    assert not queue.submit("early", lambda: asyncio.sleep(0))

    queue.start()
    await queue.shutdown(timeout=5)
    assert not queue.submit("late", lambda: asyncio.sleep(0))
    assert queue.dropped == 2


@pytest.mark.asyncio
async def test_record_click_background_uses_own_session(session, session_factory, make_link):
    link = await make_link()

    await record_click_background(link.id, "10.0.0.1", None, "https://ref.example.com/", session_factory=session_factory)

    result = await session.execute(select(ClickEvent).where(ClickEvent.link_id == link.id))
    clicks = result.scalars().all()
    assert len(clicks) == 1
    assert clicks[0].referer == "https://ref.example.com/"
