import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from review_bot.api.deps import get_queue, get_record_store
from review_bot.services.queue import DurableQueue, QueueError
from review_bot.services.record_store import RecordStore, RecordStoreError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok", "service": "pr-review-bot"}


@router.get("/health")
async def health(
    record_store: RecordStore = Depends(get_record_store),
    queue: DurableQueue = Depends(get_queue),
) -> JSONResponse:
    checks: dict[str, object] = {}
    healthy = True

    try:
        await record_store.ping()
        checks["record_store"] = "ok"
    except RecordStoreError as exc:
        logger.warning("health check: record store unavailable: %s", exc)
        checks["record_store"] = "unavailable"
        healthy = False

    try:
        checks["queue"] = (await queue.stats()).to_dict()
    except QueueError as exc:
        logger.warning("health check: queue unavailable: %s", exc)
        checks["queue"] = "unavailable"
        healthy = False

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "degraded", "checks": checks},
    )


@router.get("/ready")
async def ready(record_store: RecordStore = Depends(get_record_store)) -> JSONResponse:
    try:
        await record_store.ping()
    except RecordStoreError as exc:
        logger.warning("readiness check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "not_ready"})
    return JSONResponse(status_code=200, content={"status": "ready"})
