from fastapi import APIRouter, Depends, HTTPException, Query, status

from review_bot.api.deps import get_queue, get_record_store
from review_bot.core.security import require_admin_key
from review_bot.schemas.jobs import JobOut, QueueRetryOut, QueueStatsOut
from review_bot.services.queue import DurableQueue, QueueEntryNotFoundError, QueueUnavailableError
from review_bot.services.record_store import JOB_STATUSES, RecordStore, RecordStoreUnavailableError

router = APIRouter(dependencies=[Depends(require_admin_key)])


def _unavailable(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc) or "storage unavailable")


@router.get("/jobs", response_model=list[JobOut])
async def list_jobs(
    record_store: RecordStore = Depends(get_record_store),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    if status_filter is not None and status_filter not in JOB_STATUSES:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unknown job status")
    try:
        jobs = await record_store.list_jobs(status=status_filter, limit=limit, offset=offset)
    except RecordStoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return [JobOut(**job.to_dict()) for job in jobs]


@router.get("/jobs/{job_id}", response_model=JobOut)
async def get_job(job_id: int, record_store: RecordStore = Depends(get_record_store)) -> JobOut:
    try:
        job = await record_store.get_job(job_id)
    except RecordStoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    return JobOut(**job.to_dict())


@router.get("/queue/stats", response_model=QueueStatsOut)
async def queue_stats(queue: DurableQueue = Depends(get_queue)) -> QueueStatsOut:
    try:
        stats = await queue.stats()
    except QueueUnavailableError as exc:
        raise _unavailable(exc) from exc
    return QueueStatsOut(**stats.to_dict())


@router.post("/queue/{job_key}/retry", response_model=QueueRetryOut)
async def retry_failed_entry(job_key: str, queue: DurableQueue = Depends(get_queue)) -> QueueRetryOut:
    try:
        retried = await queue.retry_failed(job_key)
    except QueueEntryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except QueueUnavailableError as exc:
        raise _unavailable(exc) from exc
    if not retried:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="queue entry is not dead-lettered")
    return QueueRetryOut(job_key=job_key, retried=True)
