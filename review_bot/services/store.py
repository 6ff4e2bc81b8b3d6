from __future__ import annotations

from collections.abc import Callable
import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from review_bot.jobs.lease_reaper import should_requeue
from review_bot.schemas.reviews import ReviewAnalysis
from review_bot.services.queue import (
    ACTIVE,
    COMPLETED,
    FAILED,
    FINISHED_STATES,
    LEASABLE_STATES,
    OUTCOME_CREATED,
    OUTCOME_DUPLICATE_ACTIVE,
    OUTCOME_MERGED,
    OUTCOME_REQUEUED,
    RETRYING,
    WAITING,
    Delivery,
    DurableQueue,
    EnqueueResult,
    FailOutcome,
    Lease,
    LeaseLostError,
    QueueEntry,
    QueueEntryNotFoundError,
    QueueStats,
)
from review_bot.services.record_store import (
    CHANGE_REQUEST_STATUSES,
    JOB_STATUSES,
    REARMABLE_JOB_STATUSES,
    Job,
    RecordStoreNotFoundError,
    RecordStoreUnavailableError,
    issue_comment,
    truncate_error,
)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class _RepositoryRow:
    id: int
    external_id: int
    owner: str
    name: str
    installation_id: int | None
    updated_at: datetime


@dataclass(slots=True)
class _ChangeRequestRow:
    id: int
    repository_id: int
    number: int
    title: str
    author: str
    status: str
    updated_at: datetime


@dataclass(slots=True)
class _ReviewRow:
    id: int
    job_id: int
    change_request_id: int
    analysis: dict[str, Any]
    model: str
    comments: list[dict[str, Any]] = field(default_factory=list)


class InMemoryRecordStore:
    """Process-local record store for local runs and tests.

    Every method body runs without awaiting, so each call is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or utcnow
        self.available = True
        self.repositories: dict[int, _RepositoryRow] = {}
        self.change_requests: dict[tuple[int, int], _ChangeRequestRow] = {}
        self.jobs: dict[int, Job] = {}
        self.reviews: list[_ReviewRow] = []
        self._job_ids_by_key: dict[str, int] = {}
        self._next_ids = {"repository": 1, "change_request": 1, "job": 1, "review": 1}

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        self._check_available()

    async def upsert_repository(
        self,
        *,
        external_id: int,
        owner: str,
        name: str,
        installation_id: int | None,
    ) -> int:
        self._check_available()
        now = self._clock()
        row = self.repositories.get(external_id)
        if row is None:
            row = _RepositoryRow(
                id=self._allocate("repository"),
                external_id=external_id,
                owner=owner,
                name=name,
                installation_id=installation_id,
                updated_at=now,
            )
            self.repositories[external_id] = row
            return row.id

        row.owner = owner
        row.name = name
        if installation_id is not None:
            row.installation_id = installation_id
        row.updated_at = now
        return row.id

    async def upsert_change_request(
        self,
        *,
        repository_id: int,
        number: int,
        title: str,
        author: str,
        status: str,
    ) -> int:
        self._check_available()
        if status not in CHANGE_REQUEST_STATUSES:
            raise ValueError(f"invalid change request status: {status}")

        now = self._clock()
        key = (repository_id, number)
        row = self.change_requests.get(key)
        if row is None:
            row = _ChangeRequestRow(
                id=self._allocate("change_request"),
                repository_id=repository_id,
                number=number,
                title=title,
                author=author,
                status=status,
                updated_at=now,
            )
            self.change_requests[key] = row
            return row.id

        row.title = title
        row.author = author
        row.status = status
        row.updated_at = now
        return row.id

    async def upsert_job_pending(self, *, change_request_id: int, job_key: str) -> Job:
        self._check_available()
        now = self._clock()
        job_id = self._job_ids_by_key.get(job_key)
        if job_id is None:
            job = Job(
                id=self._allocate("job"),
                job_key=job_key,
                change_request_id=change_request_id,
                status="pending",
                attempts=0,
                error=None,
                completed_at=None,
                created_at=now,
                updated_at=now,
            )
            self.jobs[job.id] = job
            self._job_ids_by_key[job_key] = job.id
            return replace(job)

        job = self.jobs[job_id]
        if job.status in REARMABLE_JOB_STATUSES:
            job.status = "pending"
            job.updated_at = now
        return replace(job)

    async def transition_job(
        self,
        job_id: int,
        *,
        status: str,
        attempts: int,
        error: str | None = None,
        completed_at: datetime | None = None,
    ) -> Job:
        self._check_available()
        if status not in JOB_STATUSES:
            raise ValueError(f"invalid job status: {status}")
        job = self.jobs.get(job_id)
        if job is None:
            raise RecordStoreNotFoundError("job not found")

        job.status = status
        job.attempts = max(job.attempts, attempts)
        job.error = truncate_error(error)
        if job.completed_at is None and completed_at is not None:
            job.completed_at = completed_at
        job.updated_at = self._clock()
        return replace(job)

    async def get_job(self, job_id: int) -> Job | None:
        self._check_available()
        job = self.jobs.get(job_id)
        return replace(job) if job else None

    async def get_job_by_key(self, job_key: str) -> Job | None:
        self._check_available()
        job_id = self._job_ids_by_key.get(job_key)
        return await self.get_job(job_id) if job_id is not None else None

    async def list_jobs(self, *, status: str | None, limit: int, offset: int) -> list[Job]:
        self._check_available()
        rows = [job for job in self.jobs.values() if status is None or job.status == status]
        rows.sort(key=lambda job: (job.updated_at or job.created_at, job.id), reverse=True)
        bounded_limit = max(1, min(limit, 500))
        start = max(0, offset)
        return [replace(job) for job in rows[start : start + bounded_limit]]

    async def save_review(
        self,
        *,
        job_id: int,
        change_request_id: int,
        analysis: ReviewAnalysis,
        model: str,
    ) -> int:
        self._check_available()
        review = _ReviewRow(
            id=self._allocate("review"),
            job_id=job_id,
            change_request_id=change_request_id,
            analysis=analysis.model_dump(mode="json"),
            model=model,
            comments=[
                {
                    "file_path": issue.file or "(general)",
                    "line_number": issue.line,
                    "category": issue.type,
                    "severity": issue.severity,
                    "comment": issue_comment(issue.title, issue.description, issue.suggestion),
                }
                for issue in analysis.issues
            ],
        )
        self.reviews.append(review)
        return review.id

    def _allocate(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    def _check_available(self) -> None:
        if not self.available:
            raise RecordStoreUnavailableError("record store unavailable")


class InMemoryQueue(DurableQueue):
    """Process-local queue with the same dedup, lease and retry semantics as Postgres."""

    def __init__(self, *, name: str = "pr-reviews", clock: Clock | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("poll_interval_seconds", 0.05)
        super().__init__(name=name, **kwargs)
        self._clock = clock or utcnow
        self._entries: dict[str, QueueEntry] = {}
        self._next_id = 1

    async def enqueue(self, job_key: str, payload: dict[str, Any]) -> EnqueueResult:
        now = self._clock()
        entry = self._entries.get(job_key)
        if entry is None:
            self._entries[job_key] = QueueEntry(
                id=self._next_id,
                job_key=job_key,
                payload=copy.deepcopy(payload),
                state=WAITING,
                attempts_made=0,
                deliveries=0,
                available_at=now,
                created_at=now,
                updated_at=now,
            )
            self._next_id += 1
            return EnqueueResult(job_key=job_key, outcome=OUTCOME_CREATED)

        if entry.state == ACTIVE:
            return EnqueueResult(job_key=job_key, outcome=OUTCOME_DUPLICATE_ACTIVE)

        entry.payload = copy.deepcopy(payload)
        entry.updated_at = now
        if entry.state in FINISHED_STATES:
            entry.state = WAITING
            entry.attempts_made = 0
            entry.deliveries = 0
            entry.stalls = 0
            entry.available_at = now
            entry.last_error = None
            entry.finished_at = None
            return EnqueueResult(job_key=job_key, outcome=OUTCOME_REQUEUED)
        return EnqueueResult(job_key=job_key, outcome=OUTCOME_MERGED)

    async def try_dequeue(self) -> Delivery | None:
        now = self._clock()
        due = [
            entry
            for entry in self._entries.values()
            if entry.state in LEASABLE_STATES and entry.available_at <= now
        ]
        if not due:
            return None

        entry = min(due, key=lambda item: (item.available_at, item.id))
        entry.state = ACTIVE
        entry.lease_token = uuid4().hex
        entry.lease_expires_at = now + timedelta(seconds=self.lease_seconds)
        entry.deliveries += 1
        entry.updated_at = now
        lease = Lease(
            entry_id=entry.id,
            job_key=entry.job_key,
            token=entry.lease_token,
            expires_at=entry.lease_expires_at,
            delivery=entry.deliveries,
            attempts_made=entry.attempts_made,
        )
        return Delivery(payload=copy.deepcopy(entry.payload), lease=lease)

    async def ack(self, lease: Lease) -> None:
        entry = self._held_entry(lease)
        now = self._clock()
        entry.state = COMPLETED
        entry.lease_token = None
        entry.lease_expires_at = None
        entry.finished_at = now
        entry.updated_at = now

    async def fail(self, lease: Lease, reason: str) -> FailOutcome:
        entry = self._held_entry(lease)
        now = self._clock()
        entry.attempts_made += 1
        entry.last_error = reason
        entry.lease_token = None
        entry.lease_expires_at = None
        entry.updated_at = now

        retry_delay: float | None = None
        if self.retry_policy.is_exhausted(entry.attempts_made):
            entry.state = FAILED
            entry.finished_at = now
        else:
            retry_delay = self.retry_policy.delay_for(entry.attempts_made)
            entry.state = RETRYING
            entry.available_at = now + timedelta(seconds=retry_delay)
        return FailOutcome(
            job_key=entry.job_key,
            state=entry.state,
            attempts_made=entry.attempts_made,
            retry_delay_seconds=retry_delay,
        )

    async def stats(self) -> QueueStats:
        counts: dict[str, int] = {}
        for entry in self._entries.values():
            counts[entry.state] = counts.get(entry.state, 0) + 1
        return QueueStats(**counts)

    async def get_entry(self, job_key: str) -> QueueEntry | None:
        entry = self._entries.get(job_key)
        return copy.deepcopy(entry) if entry else None

    async def requeue_expired_leases(self, limit: int = 100) -> int:
        now = self._clock()
        expired = sorted(
            (entry for entry in self._entries.values() if should_requeue(entry, now=now)),
            key=lambda entry: entry.lease_expires_at,
        )[: max(1, min(limit, 1000))]
        for entry in expired:
            entry.stalls += 1
            if self.stall_exhausted(entry.stalls):
                entry.state = FAILED
                entry.last_error = f"lease expired {entry.stalls} times"
                entry.finished_at = now
            else:
                entry.state = WAITING
            entry.lease_token = None
            entry.lease_expires_at = None
            entry.available_at = now
            entry.updated_at = now
            self._log_expired(entry.job_key, entry.state, entry.stalls)
        return len(expired)

    async def purge_retained(self) -> int:
        now = self._clock()
        retention = self.retention_policy
        completed_cutoff = now - timedelta(seconds=retention.completed_max_age_seconds)
        failed_cutoff = now - timedelta(seconds=retention.failed_max_age_seconds)

        doomed = {
            key
            for key, entry in self._entries.items()
            if entry.finished_at is not None
            and (
                (entry.state == COMPLETED and entry.finished_at <= completed_cutoff)
                or (entry.state == FAILED and entry.finished_at <= failed_cutoff)
            )
        }
        completed = sorted(
            (entry for key, entry in self._entries.items() if entry.state == COMPLETED and key not in doomed),
            key=lambda entry: (entry.finished_at, entry.id),
            reverse=True,
        )
        doomed.update(entry.job_key for entry in completed[max(0, retention.completed_max_count) :])
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def retry_failed(self, job_key: str) -> bool:
        entry = self._entries.get(job_key)
        if entry is None:
            raise QueueEntryNotFoundError(f"no queue entry for {job_key}")
        if entry.state != FAILED:
            return False
        now = self._clock()
        entry.state = WAITING
        entry.attempts_made = 0
        entry.stalls = 0
        entry.available_at = now
        entry.finished_at = None
        entry.updated_at = now
        return True

    def _held_entry(self, lease: Lease) -> QueueEntry:
        entry = self._entries.get(lease.job_key)
        if entry is None or entry.id != lease.entry_id or entry.state != ACTIVE or entry.lease_token != lease.token:
            raise LeaseLostError(f"lease for {lease.job_key} is no longer held")
        return entry
