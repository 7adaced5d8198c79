"""
Background Task Helpers

Side effects of a resolution (click recording, webhook fan-out) run after
the redirect decision, on a bounded in-process queue, so redirect latency
is not coupled to analytics or webhook latency.

Background jobs cannot use the endpoint's session as it's closed after
the endpoint returns; each job opens its own session.

Design Decisions:
- Bounded asyncio.Queue: when full, new jobs are logged and dropped
  rather than growing memory without limit
- A fixed number of worker tasks drain the queue
- Shutdown waits (up to a timeout) for queued jobs before stopping workers
- Job failures are logged with a traceback and never retried
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from zhort.core.setting import settings
from zhort.db.session import async_session_maker
from zhort.services.click_recorder import ClickRecorder, GeoLocator
from zhort.services.domain_safety import BlocklistService
from zhort.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class SideEffectQueue:
    """Bounded fire-and-forget job queue with graceful drain."""

    def __init__(self, maxsize: Optional[int] = None, workers: Optional[int] = None):
        self.maxsize = maxsize or settings.SIDE_EFFECT_QUEUE_SIZE
        self.worker_count = workers or settings.SIDE_EFFECT_WORKERS
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._accepting = False
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._accepting

    def start(self) -> None:
        if self._workers:
            logger.warning("Side-effect queue already started")
            return

        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"side-effect-worker-{i}")
            for i in range(self.worker_count)
        ]
        self._accepting = True
        logger.info(f"Side-effect queue started: {self.worker_count} workers, capacity {self.maxsize}")

    def submit(self, name: str, job: Job) -> bool:
        """
        Enqueue a job without waiting.

        Args:
            name: Label used in logs
            job: Zero-argument coroutine factory

        Returns:
            False if the job was dropped (queue full or shutting down)
        """
        if not self._accepting:
            logger.warning(f"Side-effect queue not running, dropping {name}")
            self.dropped += 1
            return False

        try:
            self._queue.put_nowait((name, job))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(f"Side-effect queue full ({self.maxsize}), dropping {name}")
            return False
        return True

    async def _worker(self, index: int) -> None:
        while True:
            name, job = await self._queue.get()
            try:
                await job()
            except Exception as e:
                logger.error(f"Side effect {name} failed: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting jobs, drain what is queued, then stop the workers."""
        if not self._workers:
            return

        self._accepting = False
        timeout = timeout if timeout is not None else settings.SIDE_EFFECT_DRAIN_TIMEOUT_SECONDS
        pending = self._queue.qsize()

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
            logger.info(f"Side-effect queue drained ({pending} pending at shutdown)")
        except asyncio.TimeoutError:
            logger.error(f"Side-effect queue drain timed out with {self._queue.qsize()} jobs left")

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []


async def record_click_background(
    link_id: int,
    ip_address: Optional[str],
    user_agent: Optional[str],
    referer: Optional[str],
    geo_locator: Optional[GeoLocator] = None,
    session_factory: async_sessionmaker = async_session_maker
) -> None:
    """
    Background task to record a click.

    Creates its own database session as endpoint session is closed.
    """
    async with session_factory() as session:
        recorder = ClickRecorder(session, geo_locator=geo_locator)
        await recorder.record(link_id, ip_address, user_agent, referer)


async def dispatch_webhooks_background(
    dispatcher: WebhookDispatcher,
    owner_id: int,
    event: str,
    data: Dict[str, Any]
) -> None:
    """Background task to fan out one event to the owner's webhooks."""
    await dispatcher.dispatch(owner_id, event, data)


async def blocklist_refresh_loop(
    client: httpx.AsyncClient,
    interval_seconds: Optional[int] = None,
    max_age: Optional[timedelta] = None,
    session_factory: async_sessionmaker = async_session_maker
) -> None:
    """
    Keep the local blocklist fresh.

    Checks every `interval_seconds` and replaces the table when it is
    empty or older than `max_age`. Runs until cancelled.
    """
    interval_seconds = interval_seconds or settings.BLOCKLIST_CHECK_INTERVAL_SECONDS
    max_age = max_age or timedelta(hours=settings.BLOCKLIST_REFRESH_HOURS)

    while True:
        try:
            async with session_factory() as session:
                await BlocklistService(session).refresh_if_stale(client, max_age=max_age)
        except Exception as e:
            logger.error(f"Blocklist refresh failed: {e}", exc_info=True)

        await asyncio.sleep(interval_seconds)
