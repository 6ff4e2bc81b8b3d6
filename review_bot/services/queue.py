from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
import json
import logging
from typing import Any, NamedTuple
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from review_bot.services.database import Database, DatabaseUnavailableError

logger = logging.getLogger(__name__)


class QueueError(Exception):
    """Base queue error."""


class QueueUnavailableError(QueueError):
    """Raised when the queue backend is unavailable or not configured."""


class LeaseLostError(QueueError):
    """Raised when a lease expired or was handed to another worker."""


class QueueEntryNotFoundError(QueueError):
    """Raised when no entry exists for a job key."""


WAITING = "waiting"
ACTIVE = "active"
RETRYING = "retrying"
COMPLETED = "completed"
FAILED = "failed"
ENTRY_STATES = (WAITING, ACTIVE, RETRYING, COMPLETED, FAILED)
LEASABLE_STATES = (WAITING, RETRYING)
FINISHED_STATES = (COMPLETED, FAILED)

OUTCOME_CREATED = "created"
OUTCOME_MERGED = "merged"
OUTCOME_REQUEUED = "requeued"
OUTCOME_DUPLICATE_ACTIVE = "duplicate_active"


def review_job_key(repository_external_id: int, number: int) -> str:
    return f"review:{repository_external_id}:{number}"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 600.0

    def delay_for(self, attempts_made: int) -> float:
        """Backoff before the next delivery after ``attempts_made`` failures."""
        if self.backoff_base_seconds <= 0:
            return 0.0
        multiplier = max(0, attempts_made - 1)
        return min(self.backoff_base_seconds * (2**multiplier), self.backoff_max_seconds)

    def is_exhausted(self, attempts_made: int) -> bool:
        return attempts_made >= max(1, self.max_attempts)


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    completed_max_age_seconds: int = 24 * 3600
    completed_max_count: int = 100
    failed_max_age_seconds: int = 7 * 24 * 3600


@dataclass(frozen=True, slots=True)
class Lease:
    entry_id: int
    job_key: str
    token: str
    expires_at: datetime
    delivery: int
    attempts_made: int


class Delivery(NamedTuple):
    payload: dict[str, Any]
    lease: Lease


@dataclass(frozen=True, slots=True)
class EnqueueResult:
    job_key: str
    outcome: str

    @property
    def accepted(self) -> bool:
        return self.outcome != OUTCOME_DUPLICATE_ACTIVE


@dataclass(frozen=True, slots=True)
class FailOutcome:
    job_key: str
    state: str
    attempts_made: int
    retry_delay_seconds: float | None

    @property
    def dead_lettered(self) -> bool:
        return self.state == FAILED


@dataclass(frozen=True, slots=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    retrying: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "retrying": self.retrying,
            "completed": self.completed,
            "failed": self.failed,
        }


@dataclass(slots=True)
class QueueEntry:
    id: int
    job_key: str
    payload: dict[str, Any]
    state: str
    attempts_made: int
    deliveries: int
    available_at: datetime
    created_at: datetime
    updated_at: datetime
    stalls: int = 0
    lease_token: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    finished_at: datetime | None = None


class DurableQueue:
    """At-least-once work queue keyed by a deterministic job key.

    Subclasses provide storage; retry, backoff and the blocking dequeue loop
    live here so every backend applies the same policy.
    """

    def __init__(
        self,
        *,
        name: str,
        retry_policy: RetryPolicy | None = None,
        retention_policy: RetentionPolicy | None = None,
        lease_seconds: int = 300,
        max_stalls: int = 1,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.name = name
        self.retry_policy = retry_policy or RetryPolicy()
        self.retention_policy = retention_policy or RetentionPolicy()
        self.lease_seconds = max(1, lease_seconds)
        self.max_stalls = max(0, max_stalls)
        self.poll_interval_seconds = max(0.0, poll_interval_seconds)

    async def enqueue(self, job_key: str, payload: dict[str, Any]) -> EnqueueResult:
        raise NotImplementedError

    async def try_dequeue(self) -> Delivery | None:
        raise NotImplementedError

    async def ack(self, lease: Lease) -> None:
        raise NotImplementedError

    async def fail(self, lease: Lease, reason: str) -> FailOutcome:
        raise NotImplementedError

    async def stats(self) -> QueueStats:
        raise NotImplementedError

    async def get_entry(self, job_key: str) -> QueueEntry | None:
        raise NotImplementedError

    async def requeue_expired_leases(self, limit: int = 100) -> int:
        raise NotImplementedError

    async def purge_retained(self) -> int:
        raise NotImplementedError

    async def retry_failed(self, job_key: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def stall_exhausted(self, stalls: int) -> bool:
        return stalls > self.max_stalls

    def _log_expired(self, job_key: str, state: str, stalls: int) -> None:
        if state == FAILED:
            logger.error(
                "queue lease expired too often, dead-lettered queue=%s job_key=%s stalls=%s",
                self.name,
                job_key,
                stalls,
            )
        else:
            logger.warning("queue lease expired queue=%s job_key=%s stalls=%s", self.name, job_key, stalls)

    async def dequeue(
        self,
        *,
        stop: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> Delivery | None:
        """Lease the next available entry, waiting until one is due.

        Returns None once ``stop`` is set or ``timeout`` seconds have elapsed.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            if stop is not None and stop.is_set():
                return None

            delivery = await self.try_dequeue()
            if delivery is not None:
                return delivery

            wait_for = self.poll_interval_seconds
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait_for = min(wait_for, remaining)
            await _sleep_or_stop(wait_for, stop)


class PostgresQueue(DurableQueue):
    def __init__(self, database: Database, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.database = database

    async def close(self) -> None:
        await self.database.close()

    async def enqueue(self, job_key: str, payload: dict[str, Any]) -> EnqueueResult:
        async with self._connection() as conn:
            # The prior snapshot only labels the outcome; the upsert itself is atomic.
            row = await conn.fetchrow(
                """
                with prior as (
                  select state
                  from queue_entries
                  where queue_name = $1 and job_key = $2
                ),
                upserted as (
                  insert into queue_entries (queue_name, job_key, payload, state, available_at)
                  values ($1, $2, $3::jsonb, 'waiting', now())
                  on conflict (queue_name, job_key) do update
                  set
                    payload = excluded.payload,
                    state = case
                      when queue_entries.state in ('completed', 'failed') then 'waiting'
                      else queue_entries.state
                    end,
                    attempts_made = case
                      when queue_entries.state in ('completed', 'failed') then 0
                      else queue_entries.attempts_made
                    end,
                    deliveries = case
                      when queue_entries.state in ('completed', 'failed') then 0
                      else queue_entries.deliveries
                    end,
                    stalls = case
                      when queue_entries.state in ('completed', 'failed') then 0
                      else queue_entries.stalls
                    end,
                    available_at = case
                      when queue_entries.state in ('completed', 'failed') then now()
                      else queue_entries.available_at
                    end,
                    last_error = case
                      when queue_entries.state in ('completed', 'failed') then null
                      else queue_entries.last_error
                    end,
                    finished_at = null,
                    updated_at = now()
                  where queue_entries.state <> 'active'
                  returning state
                )
                select
                  (select state from prior) as prior_state,
                  (select state from upserted) as new_state
                """,
                self.name,
                job_key,
                json.dumps(payload),
            )

        prior_state = row["prior_state"] if row else None
        new_state = row["new_state"] if row else None
        if new_state is None:
            outcome = OUTCOME_DUPLICATE_ACTIVE
        elif prior_state is None:
            outcome = OUTCOME_CREATED
        elif prior_state in FINISHED_STATES:
            outcome = OUTCOME_REQUEUED
        else:
            outcome = OUTCOME_MERGED
        logger.info("queue enqueue queue=%s job_key=%s outcome=%s", self.name, job_key, outcome)
        return EnqueueResult(job_key=job_key, outcome=outcome)

    async def try_dequeue(self) -> Delivery | None:
        token = uuid4().hex
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                with next_entry as (
                  select id
                  from queue_entries
                  where queue_name = $1
                    and state in ('waiting', 'retrying')
                    and available_at <= now()
                  order by available_at asc, id asc
                  limit 1
                  for update skip locked
                )
                update queue_entries q
                set
                  state = 'active',
                  lease_token = $2,
                  lease_expires_at = now() + ($3::int * interval '1 second'),
                  deliveries = q.deliveries + 1,
                  updated_at = now()
                from next_entry n
                where q.id = n.id
                returning
                  q.id,
                  q.job_key,
                  q.payload,
                  q.lease_expires_at,
                  q.deliveries,
                  q.attempts_made
                """,
                self.name,
                token,
                self.lease_seconds,
            )
        if row is None:
            return None

        lease = Lease(
            entry_id=int(row["id"]),
            job_key=row["job_key"],
            token=token,
            expires_at=row["lease_expires_at"],
            delivery=int(row["deliveries"]),
            attempts_made=int(row["attempts_made"]),
        )
        return Delivery(payload=_decode_payload(row["payload"]), lease=lease)

    async def ack(self, lease: Lease) -> None:
        async with self._connection() as conn:
            entry_id = await conn.fetchval(
                """
                update queue_entries
                set
                  state = 'completed',
                  lease_token = null,
                  lease_expires_at = null,
                  finished_at = now(),
                  updated_at = now()
                where id = $1 and state = 'active' and lease_token = $2
                returning id
                """,
                lease.entry_id,
                lease.token,
            )
        if entry_id is None:
            raise LeaseLostError(f"lease for {lease.job_key} is no longer held")

    async def fail(self, lease: Lease, reason: str) -> FailOutcome:
        policy = self.retry_policy
        async with self._connection() as conn:
            # Right-hand expressions read the pre-update attempts_made.
            row = await conn.fetchrow(
                """
                update queue_entries
                set
                  attempts_made = attempts_made + 1,
                  state = case when attempts_made + 1 >= $3 then 'failed' else 'retrying' end,
                  available_at = case
                    when attempts_made + 1 >= $3 then available_at
                    else now() + (least($4::float8 * power(2, attempts_made), $5::float8) * interval '1 second')
                  end,
                  finished_at = case when attempts_made + 1 >= $3 then now() else null end,
                  last_error = $6,
                  lease_token = null,
                  lease_expires_at = null,
                  updated_at = now()
                where id = $1 and state = 'active' and lease_token = $2
                returning state, attempts_made
                """,
                lease.entry_id,
                lease.token,
                max(1, policy.max_attempts),
                float(max(0.0, policy.backoff_base_seconds)),
                float(policy.backoff_max_seconds),
                reason,
            )
        if row is None:
            raise LeaseLostError(f"lease for {lease.job_key} is no longer held")

        attempts_made = int(row["attempts_made"])
        state = row["state"]
        return FailOutcome(
            job_key=lease.job_key,
            state=state,
            attempts_made=attempts_made,
            retry_delay_seconds=policy.delay_for(attempts_made) if state == RETRYING else None,
        )

    async def stats(self) -> QueueStats:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select state, count(*)::int as total
                from queue_entries
                where queue_name = $1
                group by state
                """,
                self.name,
            )
        counts = {row["state"]: int(row["total"]) for row in rows}
        return QueueStats(**{state: counts.get(state, 0) for state in ENTRY_STATES})

    async def get_entry(self, job_key: str) -> QueueEntry | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                select
                  id,
                  job_key,
                  payload,
                  state,
                  attempts_made,
                  deliveries,
                  stalls,
                  available_at,
                  created_at,
                  updated_at,
                  lease_token,
                  lease_expires_at,
                  last_error,
                  finished_at
                from queue_entries
                where queue_name = $1 and job_key = $2
                """,
                self.name,
                job_key,
            )
        if row is None:
            return None
        return QueueEntry(
            id=int(row["id"]),
            job_key=row["job_key"],
            payload=_decode_payload(row["payload"]),
            state=row["state"],
            attempts_made=int(row["attempts_made"]),
            deliveries=int(row["deliveries"]),
            stalls=int(row["stalls"]),
            available_at=row["available_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            lease_token=row["lease_token"],
            lease_expires_at=row["lease_expires_at"],
            last_error=row["last_error"],
            finished_at=row["finished_at"],
        )

    async def requeue_expired_leases(self, limit: int = 100) -> int:
        bounded_limit = max(1, min(limit, 1000))
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                with expired as (
                  select id
                  from queue_entries
                  where queue_name = $1
                    and state = 'active'
                    and lease_expires_at is not null
                    and lease_expires_at <= now()
                  order by lease_expires_at asc
                  limit $2
                  for update skip locked
                )
                update queue_entries q
                set
                  stalls = q.stalls + 1,
                  state = case when q.stalls + 1 > $3 then 'failed' else 'waiting' end,
                  last_error = case
                    when q.stalls + 1 > $3 then 'lease expired ' || (q.stalls + 1)::text || ' times'
                    else q.last_error
                  end,
                  finished_at = case when q.stalls + 1 > $3 then now() else null end,
                  lease_token = null,
                  lease_expires_at = null,
                  available_at = now(),
                  updated_at = now()
                from expired e
                where q.id = e.id
                returning q.job_key, q.state, q.stalls
                """,
                self.name,
                bounded_limit,
                self.max_stalls,
            )
        for row in rows:
            self._log_expired(row["job_key"], row["state"], int(row["stalls"]))
        return len(rows)

    async def purge_retained(self) -> int:
        retention = self.retention_policy
        async with self._connection() as conn:
            async with conn.transaction():
                expired = await conn.fetch(
                    """
                    delete from queue_entries
                    where queue_name = $1
                      and (
                        (state = 'completed' and finished_at <= now() - ($2::int * interval '1 second'))
                        or (state = 'failed' and finished_at <= now() - ($3::int * interval '1 second'))
                      )
                    returning id
                    """,
                    self.name,
                    retention.completed_max_age_seconds,
                    retention.failed_max_age_seconds,
                )
                overflow = await conn.fetch(
                    """
                    delete from queue_entries
                    where id in (
                      select id
                      from queue_entries
                      where queue_name = $1 and state = 'completed'
                      order by finished_at desc, id desc
                      offset $2
                    )
                    returning id
                    """,
                    self.name,
                    max(0, retention.completed_max_count),
                )
        return len(expired) + len(overflow)

    async def retry_failed(self, job_key: str) -> bool:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                select state
                from queue_entries
                where queue_name = $1 and job_key = $2
                """,
                self.name,
                job_key,
            )
            if row is None:
                raise QueueEntryNotFoundError(f"no queue entry for {job_key}")
            entry_id = await conn.fetchval(
                """
                update queue_entries
                set
                  state = 'waiting',
                  attempts_made = 0,
                  stalls = 0,
                  available_at = now(),
                  finished_at = null,
                  updated_at = now()
                where queue_name = $1 and job_key = $2 and state = 'failed'
                returning id
                """,
                self.name,
                job_key,
            )
        return entry_id is not None

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self.database.connection() as conn:
                yield conn
        except DatabaseUnavailableError as exc:
            raise QueueUnavailableError(str(exc)) from exc
        except pg_exc.OperatorInterventionError as exc:
            raise QueueUnavailableError(f"database unavailable: {exc}") from exc
        except asyncpg.PostgresError as exc:
            raise QueueError(f"database error: {exc}") from exc


def _decode_payload(raw: Any) -> dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    return raw if isinstance(raw, dict) else {}


async def _sleep_or_stop(seconds: float, stop: asyncio.Event | None) -> None:
    if stop is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
