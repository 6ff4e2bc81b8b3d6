from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
import logging

from review_bot.services.record_store import Job, RecordStore, RecordStoreNotFoundError

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class InvalidTransitionError(ValueError):
    pass


# processing -> processing is a redelivery after a crashed attempt.
_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.FAILED: {JobStatus.PENDING, JobStatus.PROCESSING},
    JobStatus.COMPLETED: {JobStatus.PENDING, JobStatus.PROCESSING},
}


def can_transition(source: JobStatus, target: JobStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[source]


def assert_transition(source: JobStatus, target: JobStatus) -> None:
    if not can_transition(source, target):
        raise InvalidTransitionError(f"Illegal job transition: {source.value} -> {target.value}")


def allowed_targets(status: JobStatus) -> list[JobStatus]:
    return sorted(_ALLOWED_TRANSITIONS[status], key=lambda s: s.value)


class JobStateMachine:
    """Owns every write to a Job's status, attempts, error and completed_at.

    Writes are update-by-id against the record store. Queue bookkeeping never
    feeds into them, so job history survives a queue purge.
    """

    def __init__(self, record_store: RecordStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self.record_store = record_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def register_pending(self, *, change_request_id: int, job_key: str) -> Job:
        return await self.record_store.upsert_job_pending(change_request_id=change_request_id, job_key=job_key)

    async def get(self, job_id: int) -> Job:
        job = await self.record_store.get_job(job_id)
        if job is None:
            raise RecordStoreNotFoundError(f"job {job_id} not found")
        return job

    async def begin_attempt(self, job_id: int) -> Job:
        job = await self.get(job_id)
        assert_transition(JobStatus(job.status), JobStatus.PROCESSING)
        updated = await self.record_store.transition_job(
            job_id,
            status=JobStatus.PROCESSING.value,
            attempts=job.attempts + 1,
            error=job.error,
        )
        logger.info("job processing id=%s key=%s attempt=%s", updated.id, updated.job_key, updated.attempts)
        return updated

    async def complete(self, job_id: int) -> Job:
        job = await self.get(job_id)
        assert_transition(JobStatus(job.status), JobStatus.COMPLETED)
        updated = await self.record_store.transition_job(
            job_id,
            status=JobStatus.COMPLETED.value,
            attempts=job.attempts,
            error=None,
            completed_at=self._clock(),
        )
        logger.info("job completed id=%s key=%s attempts=%s", updated.id, updated.job_key, updated.attempts)
        return updated

    async def fail(self, job_id: int, error: str) -> Job:
        job = await self.get(job_id)
        assert_transition(JobStatus(job.status), JobStatus.FAILED)
        updated = await self.record_store.transition_job(
            job_id,
            status=JobStatus.FAILED.value,
            attempts=job.attempts,
            error=error,
        )
        logger.warning("job failed id=%s key=%s attempts=%s error=%s", updated.id, updated.job_key, updated.attempts, error)
        return updated
