from __future__ import annotations

import asyncio

from asyncpg import exceptions as pg_exc

from review_bot.jobs.executor import ReviewExecutor
from review_bot.jobs.lease_reaper import Housekeeper
from review_bot.schemas.webhooks import PullRequestEvent
from review_bot.services.ingestion import IngestionService
from review_bot.services.queue import QueueUnavailableError, RetryPolicy
from review_bot.services.store import InMemoryQueue, InMemoryRecordStore
from review_bot.worker import WorkerPool


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_pool_processes_reviews_until_stopped(pull_request_body, fake_github, fake_analyzer) -> None:
    async def run() -> None:
        store = InMemoryRecordStore()
        queue = InMemoryQueue(poll_interval_seconds=0.01)
        github = fake_github()
        executor = ReviewExecutor(
            record_store=store,
            queue=queue,
            fetcher=github,
            analyzer=fake_analyzer,
            publisher=github,
        )
        service = IngestionService(record_store=store, queue=queue)
        for number in (1, 2, 3):
            await service.ingest(PullRequestEvent.model_validate(pull_request_body(number=number)))

        pool = WorkerPool(queue, executor, concurrency=2, poll_interval_seconds=0.01)
        stop = asyncio.Event()
        runner = asyncio.create_task(pool.run(stop))

        async def all_completed() -> bool:
            return (await queue.stats()).completed == 3

        await _wait_for(all_completed)
        stop.set()
        await asyncio.wait_for(runner, timeout=2.0)

        assert pool.processed == 3
        assert sorted(number for _, number, _ in github.published) == [1, 2, 3]
        statuses = {job.status for job in store.jobs.values()}
        assert statuses == {"completed"}

    asyncio.run(run())


class FlakyQueue(InMemoryQueue):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.outages = 2

    async def try_dequeue(self):
        if self.outages:
            self.outages -= 1
            raise QueueUnavailableError("database unavailable")
        return await super().try_dequeue()


def test_pool_survives_queue_outage(pull_request_body, fake_github, fake_analyzer) -> None:
    async def run() -> None:
        store = InMemoryRecordStore()
        queue = FlakyQueue(poll_interval_seconds=0.01, retry_policy=RetryPolicy(max_attempts=3))
        github = fake_github()
        executor = ReviewExecutor(
            record_store=store,
            queue=queue,
            fetcher=github,
            analyzer=fake_analyzer,
            publisher=github,
        )
        await IngestionService(record_store=store, queue=queue).ingest(
            PullRequestEvent.model_validate(pull_request_body())
        )

        pool = WorkerPool(
            queue,
            executor,
            concurrency=1,
            housekeeper=Housekeeper(queue),
            poll_interval_seconds=0.01,
            max_backoff_seconds=0.05,
        )
        stop = asyncio.Event()
        runner = asyncio.create_task(pool.run(stop))

        async def completed() -> bool:
            return (await queue.stats()).completed == 1

        await _wait_for(completed)
        stop.set()
        await asyncio.wait_for(runner, timeout=2.0)
        assert queue.outages == 0

    asyncio.run(run())


class ShutdownQueue(InMemoryQueue):
    """Raises raw driver errors that no queue error family wraps."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.dequeue_errors = 2
        self.reap_errors = 2

    async def try_dequeue(self):
        if self.dequeue_errors:
            self.dequeue_errors -= 1
            raise pg_exc.AdminShutdownError("terminating connection due to administrator command")
        return await super().try_dequeue()

    async def requeue_expired_leases(self, limit: int = 100) -> int:
        if self.reap_errors:
            self.reap_errors -= 1
            raise RuntimeError("reaper exploded")
        return await super().requeue_expired_leases(limit)


def test_pool_survives_unexpected_errors(pull_request_body, fake_github, fake_analyzer) -> None:
    async def run() -> None:
        store = InMemoryRecordStore()
        queue = ShutdownQueue(poll_interval_seconds=0.01)
        github = fake_github()
        executor = ReviewExecutor(
            record_store=store,
            queue=queue,
            fetcher=github,
            analyzer=fake_analyzer,
            publisher=github,
        )
        await IngestionService(record_store=store, queue=queue).ingest(
            PullRequestEvent.model_validate(pull_request_body())
        )

        pool = WorkerPool(
            queue,
            executor,
            concurrency=2,
            housekeeper=Housekeeper(queue, reap_interval_seconds=0.0),
            poll_interval_seconds=0.01,
            max_backoff_seconds=0.05,
        )
        stop = asyncio.Event()
        runner = asyncio.create_task(pool.run(stop))

        async def settled() -> bool:
            return (await queue.stats()).completed == 1 and queue.reap_errors == 0

        await _wait_for(settled)
        assert not runner.done()
        stop.set()
        await asyncio.wait_for(runner, timeout=2.0)

        assert queue.dequeue_errors == 0
        assert pool.processed == 1
        assert len(github.published) == 1

    asyncio.run(run())
