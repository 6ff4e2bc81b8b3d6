from __future__ import annotations

import asyncio
import logging
import random
import signal

from opentelemetry import trace

from review_bot.core.config import Settings, get_settings
from review_bot.core.telemetry import (
    configure_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from review_bot.jobs.executor import ReviewExecutor
from review_bot.jobs.lease_reaper import Housekeeper
from review_bot.services.analyzer import ChatCompletionsAnalyzer
from review_bot.services.database import Database
from review_bot.services.github import GitHubClient
from review_bot.services.queue import DurableQueue, PostgresQueue, QueueError, RetentionPolicy, RetryPolicy
from review_bot.services.record_store import PostgresRecordStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class WorkerPool:
    """N worker loops sharing one queue, plus a housekeeping loop.

    Every loop exits once ``stop`` is set; a delivery that is already being
    processed runs to completion first.
    """

    def __init__(
        self,
        queue: DurableQueue,
        executor: ReviewExecutor,
        *,
        concurrency: int = 2,
        housekeeper: Housekeeper | None = None,
        poll_interval_seconds: float = 1.0,
        max_backoff_seconds: float = 15.0,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.concurrency = max(1, concurrency)
        self.housekeeper = housekeeper or Housekeeper(queue)
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.processed = 0

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("worker pool starting concurrency=%s queue=%s", self.concurrency, self.queue.name)
        tasks = [
            asyncio.create_task(self._worker_loop(index, stop), name=f"review-worker-{index}")
            for index in range(self.concurrency)
        ]
        tasks.append(asyncio.create_task(self._housekeeping_loop(stop), name="review-housekeeping"))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("worker pool stopped processed=%s", self.processed)

    async def _worker_loop(self, index: int, stop: asyncio.Event) -> None:
        backoff = self.poll_interval_seconds
        while not stop.is_set():
            try:
                delivery = await self.queue.dequeue(stop=stop)
                if delivery is None:
                    continue
                outcome = await self.executor.process(delivery)
            except QueueError as exc:
                backoff = await self._back_off(f"worker-{index} dequeue failed: {exc}", backoff, stop)
                continue
            except Exception as exc:
                logger.exception("worker-%s iteration failed", index)
                backoff = await self._back_off(f"worker-{index} iteration failed: {exc!r}", backoff, stop)
                continue

            backoff = self.poll_interval_seconds
            self.processed += 1
            logger.info(
                "worker-%s processed key=%s status=%s delivery=%s",
                index,
                outcome.job_key,
                outcome.status,
                delivery.lease.delivery,
            )

    async def _housekeeping_loop(self, stop: asyncio.Event) -> None:
        backoff = self.poll_interval_seconds
        while not stop.is_set():
            try:
                with tracer.start_as_current_span("worker.housekeeping"):
                    await self.housekeeper.run_once()
            except QueueError as exc:
                backoff = await self._back_off(f"housekeeping failed: {exc}", backoff, stop)
                continue
            except Exception as exc:
                logger.exception("housekeeping iteration failed")
                backoff = await self._back_off(f"housekeeping failed: {exc!r}", backoff, stop)
                continue
            backoff = self.poll_interval_seconds
            await _wait(stop, self.poll_interval_seconds)

    async def _back_off(self, message: str, backoff: float, stop: asyncio.Event) -> float:
        jitter = random.uniform(0.0, 0.5)
        sleep_for = min(max(backoff, 0.01) * (2.0 + jitter), self.max_backoff_seconds)
        logger.warning("%s; retry in %.1fs", message, sleep_for)
        await _wait(stop, sleep_for)
        return sleep_for


async def _wait(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


def build_queue(settings: Settings, database: Database) -> PostgresQueue:
    return PostgresQueue(
        database,
        name=settings.queue_name,
        retry_policy=RetryPolicy(
            max_attempts=settings.queue_max_attempts,
            backoff_base_seconds=settings.queue_backoff_base_seconds,
            backoff_max_seconds=settings.queue_backoff_max_seconds,
        ),
        retention_policy=RetentionPolicy(
            completed_max_age_seconds=settings.queue_completed_retention_seconds,
            completed_max_count=settings.queue_completed_retention_count,
            failed_max_age_seconds=settings.queue_failed_retention_seconds,
        ),
        lease_seconds=settings.queue_lease_seconds,
        max_stalls=settings.queue_max_stalls,
        poll_interval_seconds=settings.worker_poll_interval_seconds,
    )


def build_database(settings: Settings, dsn: str | None) -> Database:
    return Database(
        dsn,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )


async def run_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)

    database = build_database(settings, settings.database_url)
    queue_database = (
        build_database(settings, settings.queue_database_url) if settings.queue_database_url else database
    )
    record_store = PostgresRecordStore(database)
    queue = build_queue(settings, queue_database)
    github = GitHubClient(
        base_url=settings.github_api_base_url,
        token=settings.github_token,
        timeout_seconds=settings.github_timeout_seconds,
    )
    executor = ReviewExecutor(
        record_store=record_store,
        queue=queue,
        fetcher=github,
        analyzer=ChatCompletionsAnalyzer(
            base_url=settings.analyzer_base_url,
            api_key=settings.analyzer_api_key,
            model=settings.analyzer_model,
            temperature=settings.analyzer_temperature,
            max_tokens=settings.analyzer_max_tokens,
            timeout_seconds=settings.analyzer_timeout_seconds,
        ),
        publisher=github,
    )
    pool = WorkerPool(
        queue,
        executor,
        concurrency=settings.worker_concurrency,
        housekeeper=Housekeeper(
            queue,
            reap_interval_seconds=settings.lease_reaper_interval_seconds,
            reap_batch_size=settings.lease_reaper_batch_size,
            retention_interval_seconds=settings.retention_interval_seconds,
        ),
        poll_interval_seconds=settings.worker_poll_interval_seconds,
        max_backoff_seconds=settings.worker_max_backoff_seconds,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:  # pragma: no cover - platforms without signal handlers
            logger.warning("signal handlers unavailable for %s", signum)

    try:
        await pool.run(stop)
    finally:
        await queue.close()
        await record_store.close()
        shutdown_worker_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
