from __future__ import annotations

from dataclasses import dataclass
import logging

from review_bot.schemas.jobs import ReviewPayload
from review_bot.schemas.webhooks import PullRequestEvent
from review_bot.services.job_state import JobStateMachine
from review_bot.services.queue import DurableQueue, EnqueueResult, review_job_key
from review_bot.services.record_store import Job, RecordStore
from review_bot.services.recorder import IdempotentRecorder

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IngestionOutcome:
    job: Job
    enqueue: EnqueueResult
    payload: ReviewPayload


class IngestionService:
    """Record an in-scope pull request event and schedule its review."""

    def __init__(self, *, record_store: RecordStore, queue: DurableQueue) -> None:
        self.recorder = IdempotentRecorder(record_store)
        self.jobs = JobStateMachine(record_store)
        self.queue = queue

    async def ingest(self, event: PullRequestEvent, *, delivery_id: str | None = None) -> IngestionOutcome:
        subject = await self.recorder.record(event)
        job_key = review_job_key(event.repository.id, event.pull_request.number)
        job = await self.jobs.register_pending(change_request_id=subject.change_request_id, job_key=job_key)

        payload = ReviewPayload(
            job_id=job.id,
            job_key=job_key,
            change_request_id=subject.change_request_id,
            repository_id=subject.repository_id,
            repository_external_id=event.repository.id,
            repo_full_name=event.repository.full_name,
            number=event.pull_request.number,
            installation_id=event.installation.id if event.installation else None,
            head_sha=event.pull_request.head.sha if event.pull_request.head else None,
            delivery_id=delivery_id,
        )
        result = await self.queue.enqueue(job_key, payload.model_dump(mode="json"))
        logger.info(
            "review scheduled repo=%s pr=%s job_id=%s job_key=%s outcome=%s delivery=%s",
            event.repository.full_name,
            event.pull_request.number,
            job.id,
            job_key,
            result.outcome,
            delivery_id,
        )
        return IngestionOutcome(job=job, enqueue=result, payload=payload)
