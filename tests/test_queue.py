from __future__ import annotations

import asyncio

import pytest

from review_bot.services.queue import (
    OUTCOME_CREATED,
    OUTCOME_DUPLICATE_ACTIVE,
    OUTCOME_MERGED,
    OUTCOME_REQUEUED,
    LeaseLostError,
    QueueEntryNotFoundError,
    RetentionPolicy,
    RetryPolicy,
    review_job_key,
)
from review_bot.services.store import InMemoryQueue


def test_review_job_key_is_deterministic() -> None:
    assert review_job_key(42, 7) == "review:42:7"
    assert review_job_key(42, 7) == review_job_key(42, 7)


def test_retry_policy_doubles_and_caps() -> None:
    policy = RetryPolicy(max_attempts=3, backoff_base_seconds=1.0, backoff_max_seconds=5.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert not policy.is_exhausted(2)
    assert policy.is_exhausted(3)


def test_enqueue_dedupes_by_job_key(clock) -> None:
    async def run() -> None:
        queue = InMemoryQueue(clock=clock)
        first = await queue.enqueue("review:1:1", {"v": 1})
        second = await queue.enqueue("review:1:1", {"v": 2})
        assert first.outcome == OUTCOME_CREATED
        assert second.outcome == OUTCOME_MERGED

        stats = await queue.stats()
        assert stats.waiting == 1

        delivery = await queue.try_dequeue()
        assert delivery is not None
        assert delivery.payload == {"v": 2}

        duplicate = await queue.enqueue("review:1:1", {"v": 3})
        assert duplicate.outcome == OUTCOME_DUPLICATE_ACTIVE
        assert not duplicate.accepted
        assert (await queue.stats()).active == 1

        await queue.ack(delivery.lease)
        requeued = await queue.enqueue("review:1:1", {"v": 4})
        assert requeued.outcome == OUTCOME_REQUEUED
        entry = await queue.get_entry("review:1:1")
        assert entry is not None
        assert entry.state == "waiting"
        assert entry.attempts_made == 0

    asyncio.run(run())


def test_dequeue_orders_by_availability(clock) -> None:
    async def run() -> None:
        queue = InMemoryQueue(clock=clock)
        await queue.enqueue("review:1:1", {"n": 1})
        clock.advance(1)
        await queue.enqueue("review:1:2", {"n": 2})

        first = await queue.try_dequeue()
        second = await queue.try_dequeue()
        assert first is not None and second is not None
        assert [first.payload["n"], second.payload["n"]] == [1, 2]
        assert await queue.try_dequeue() is None

    asyncio.run(run())


def test_fail_backs_off_then_dead_letters(clock) -> None:
    async def run() -> None:
        queue = InMemoryQueue(clock=clock, retry_policy=RetryPolicy(max_attempts=3, backoff_base_seconds=1.0))
        await queue.enqueue("review:1:1", {})

        delivery = await queue.try_dequeue()
        assert delivery is not None
        outcome = await queue.fail(delivery.lease, "boom")
        assert outcome.state == "retrying"
        assert outcome.retry_delay_seconds == 1.0
        assert await queue.try_dequeue() is None

        clock.advance(1)
        delivery = await queue.try_dequeue()
        assert delivery is not None
        assert delivery.lease.attempts_made == 1
        outcome = await queue.fail(delivery.lease, "boom")
        assert outcome.retry_delay_seconds == 2.0

        clock.advance(2)
        delivery = await queue.try_dequeue()
        assert delivery is not None
        outcome = await queue.fail(delivery.lease, "boom again")
        assert outcome.dead_lettered
        assert outcome.attempts_made == 3

        clock.advance(3600)
        assert await queue.try_dequeue() is None
        entry = await queue.get_entry("review:1:1")
        assert entry is not None
        assert entry.state == "failed"
        assert entry.last_error == "boom again"

    asyncio.run(run())


def test_stale_lease_cannot_settle_entry(clock) -> None:
    async def run() -> None:
        queue = InMemoryQueue(clock=clock, lease_seconds=30)
        await queue.enqueue("review:1:1", {})
        stale = await queue.try_dequeue()
        assert stale is not None

        clock.advance(31)
        assert await queue.requeue_expired_leases() == 1
        fresh = await queue.try_dequeue()
        assert fresh is not None
        assert fresh.lease.delivery == 2

        with pytest.raises(LeaseLostError):
            await queue.ack(stale.lease)
        with pytest.raises(LeaseLostError):
            await queue.fail(stale.lease, "late")
        await queue.ack(fresh.lease)

        entry = await queue.get_entry("review:1:1")
        assert entry is not None
        assert entry.state == "completed"
        assert entry.attempts_made == 0

    asyncio.run(run())


def test_dequeue_waits_until_stop(clock) -> None:
    async def run() -> None:
        queue = InMemoryQueue(clock=clock, poll_interval_seconds=0.01)
        stop = asyncio.Event()
        waiter = asyncio.create_task(queue.dequeue(stop=stop))
        await asyncio.sleep(0.05)
        assert not waiter.done()
        stop.set()
        assert await asyncio.wait_for(waiter, timeout=1.0) is None

        assert await queue.dequeue(timeout=0.03) is None

        await queue.enqueue("review:1:1", {"x": 1})
        delivery = await queue.dequeue(timeout=1.0)
        assert delivery is not None
        assert delivery.payload == {"x": 1}

    asyncio.run(run())


def test_retry_failed_resets_dead_lettered_entry(clock) -> None:
    async def run() -> None:
        queue = InMemoryQueue(clock=clock, retry_policy=RetryPolicy(max_attempts=1))
        await queue.enqueue("review:1:1", {})
        delivery = await queue.try_dequeue()
        assert delivery is not None
        await queue.fail(delivery.lease, "boom")

        assert await queue.retry_failed("review:1:1")
        assert not await queue.retry_failed("review:1:1")
        with pytest.raises(QueueEntryNotFoundError):
            await queue.retry_failed("review:9:9")

        redelivered = await queue.try_dequeue()
        assert redelivered is not None
        assert redelivered.lease.attempts_made == 0

    asyncio.run(run())


def test_purge_retained_applies_age_and_count(clock) -> None:
    async def run() -> None:
        retention = RetentionPolicy(
            completed_max_age_seconds=3600,
            completed_max_count=2,
            failed_max_age_seconds=7200,
        )
        queue = InMemoryQueue(clock=clock, retention_policy=retention, retry_policy=RetryPolicy(max_attempts=1))
        for number in range(1, 5):
            await queue.enqueue(f"review:1:{number}", {})
            delivery = await queue.try_dequeue()
            assert delivery is not None
            await queue.ack(delivery.lease)
            clock.advance(60)

        await queue.enqueue("review:1:99", {})
        delivery = await queue.try_dequeue()
        assert delivery is not None
        await queue.fail(delivery.lease, "boom")

        assert await queue.purge_retained() == 2
        assert await queue.get_entry("review:1:1") is None
        assert await queue.get_entry("review:1:4") is not None

        clock.advance(3600)
        assert await queue.purge_retained() == 2
        assert await queue.get_entry("review:1:99") is not None

        clock.advance(7200)
        assert await queue.purge_retained() == 1
        assert (await queue.stats()).to_dict() == {
            "waiting": 0,
            "active": 0,
            "retrying": 0,
            "completed": 0,
            "failed": 0,
        }

    asyncio.run(run())


def test_repeated_lease_expiry_dead_letters_entry(clock) -> None:
    async def run() -> None:
        queue = InMemoryQueue(clock=clock, lease_seconds=30, max_stalls=1)
        await queue.enqueue("review:1:1", {})

        assert await queue.try_dequeue() is not None
        clock.advance(31)
        assert await queue.requeue_expired_leases() == 1
        entry = await queue.get_entry("review:1:1")
        assert entry is not None
        assert (entry.state, entry.stalls) == ("waiting", 1)

        assert await queue.try_dequeue() is not None
        clock.advance(31)
        assert await queue.requeue_expired_leases() == 1
        entry = await queue.get_entry("review:1:1")
        assert entry is not None
        assert (entry.state, entry.stalls) == ("failed", 2)
        assert entry.last_error == "lease expired 2 times"
        assert entry.finished_at == clock.now
        assert await queue.try_dequeue() is None

        assert await queue.retry_failed("review:1:1")
        entry = await queue.get_entry("review:1:1")
        assert entry is not None
        assert (entry.state, entry.stalls) == ("waiting", 0)

    asyncio.run(run())


def test_new_delivery_resets_stall_count(clock) -> None:
    async def run() -> None:
        queue = InMemoryQueue(clock=clock, lease_seconds=30, max_stalls=0)
        await queue.enqueue("review:1:1", {})
        assert await queue.try_dequeue() is not None
        clock.advance(31)
        await queue.requeue_expired_leases()
        assert (await queue.stats()).failed == 1

        assert (await queue.enqueue("review:1:1", {"v": 2})).outcome == OUTCOME_REQUEUED
        entry = await queue.get_entry("review:1:1")
        assert entry is not None
        assert (entry.state, entry.stalls, entry.attempts_made) == ("waiting", 0, 0)

    asyncio.run(run())
