from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging

from opentelemetry import trace
from pydantic import ValidationError

from review_bot.schemas.changes import ChangeSet, RepoRef
from review_bot.schemas.jobs import ReviewPayload
from review_bot.schemas.reviews import ReviewAnalysis
from review_bot.services.collaborators import ChangeAnalyzer, ChangeFetcher, ResultPublisher
from review_bot.services.job_state import JobStateMachine
from review_bot.services.queue import Delivery, DurableQueue, FailOutcome, Lease, LeaseLostError
from review_bot.services.record_store import Job, RecordStore, truncate_error
from review_bot.services.rendering import render_review_comment

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_INVALID_PAYLOAD = "invalid_payload"

Renderer = Callable[[ReviewAnalysis, ChangeSet], str]


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    job_key: str
    status: str
    job: Job | None = None
    fail: FailOutcome | None = None
    error: str | None = None


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    text = f"{type(exc).__name__}: {message}" if message else type(exc).__name__
    return truncate_error(text) or type(exc).__name__


class ReviewExecutor:
    """Runs one delivered review end to end and settles its lease.

    ``process`` never raises for handler failures: the job record and the
    queue entry are both moved to their failure states and the outcome is
    returned to the caller.
    """

    def __init__(
        self,
        *,
        record_store: RecordStore,
        queue: DurableQueue,
        fetcher: ChangeFetcher,
        analyzer: ChangeAnalyzer,
        publisher: ResultPublisher,
        renderer: Renderer = render_review_comment,
        jobs: JobStateMachine | None = None,
    ) -> None:
        self.record_store = record_store
        self.queue = queue
        self.fetcher = fetcher
        self.analyzer = analyzer
        self.publisher = publisher
        self.renderer = renderer
        self.jobs = jobs or JobStateMachine(record_store)

    async def process(self, delivery: Delivery) -> ProcessOutcome:
        raw_payload, lease = delivery
        with tracer.start_as_current_span("worker.process_job") as span:
            span.set_attribute("queue.job_key", lease.job_key)
            span.set_attribute("queue.delivery", lease.delivery)
            try:
                payload = ReviewPayload.model_validate(raw_payload)
            except ValidationError as exc:
                error = describe_error(exc)
                logger.error("invalid queue payload key=%s: %s", lease.job_key, error)
                fail_outcome = await self._fail_lease(lease, error)
                return ProcessOutcome(
                    job_key=lease.job_key,
                    status=STATUS_INVALID_PAYLOAD,
                    fail=fail_outcome,
                    error=error,
                )

            span.set_attribute("job.id", payload.job_id)
            try:
                job = await self._review(payload)
            except Exception as exc:
                error = describe_error(exc)
                logger.exception("review failed job_id=%s key=%s delivery=%s", payload.job_id, lease.job_key, lease.delivery)
                span.record_exception(exc)
                job = await self._record_failure(payload.job_id, error)
                fail_outcome = await self._fail_lease(lease, error)
                return ProcessOutcome(
                    job_key=lease.job_key,
                    status=STATUS_FAILED,
                    job=job,
                    fail=fail_outcome,
                    error=error,
                )

            try:
                await self.queue.ack(lease)
            except LeaseLostError:
                logger.warning("lease lost before ack key=%s delivery=%s", lease.job_key, lease.delivery)
            except Exception:
                logger.exception("ack failed key=%s delivery=%s; entry will be redelivered", lease.job_key, lease.delivery)
            return ProcessOutcome(job_key=lease.job_key, status=STATUS_COMPLETED, job=job)

    async def _review(self, payload: ReviewPayload) -> Job:
        repo = RepoRef.parse(payload.repo_full_name)
        await self.jobs.begin_attempt(payload.job_id)

        change = await self.fetcher.fetch_change(repo, payload.number)
        analysis = await self.analyzer.analyze(change.metadata, change.files)
        await self.record_store.save_review(
            job_id=payload.job_id,
            change_request_id=payload.change_request_id,
            analysis=analysis,
            model=self.analyzer.model,
        )
        await self.publisher.publish_result(repo, payload.number, self.renderer(analysis, change))
        return await self.jobs.complete(payload.job_id)

    async def _record_failure(self, job_id: int, error: str) -> Job | None:
        try:
            return await self.jobs.fail(job_id, error)
        except Exception:
            logger.exception("could not record failure for job_id=%s", job_id)
            return None

    async def _fail_lease(self, lease: Lease, error: str) -> FailOutcome | None:
        try:
            outcome = await self.queue.fail(lease, error)
        except LeaseLostError:
            logger.warning("lease lost before fail key=%s delivery=%s", lease.job_key, lease.delivery)
            return None
        except Exception:
            logger.exception("fail bookkeeping failed key=%s delivery=%s", lease.job_key, lease.delivery)
            return None

        if outcome.dead_lettered:
            logger.error(
                "review dead-lettered key=%s attempts=%s error=%s",
                outcome.job_key,
                outcome.attempts_made,
                error,
            )
        else:
            logger.warning(
                "review will retry key=%s attempts=%s in %.1fs",
                outcome.job_key,
                outcome.attempts_made,
                outcome.retry_delay_seconds or 0.0,
            )
        return outcome
