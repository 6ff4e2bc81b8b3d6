import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from opentelemetry import trace
from pydantic import ValidationError

from review_bot.api.deps import get_app_settings, get_queue, get_record_store
from review_bot.core.config import Settings
from review_bot.core.events import classify
from review_bot.core.security import verify_signature
from review_bot.schemas.webhooks import PullRequestEvent, WebhookAccepted, WebhookIgnored
from review_bot.services.ingestion import IngestionService
from review_bot.services.queue import DurableQueue, QueueError, QueueUnavailableError
from review_bot.services.record_store import RecordStore, RecordStoreError, RecordStoreUnavailableError

router = APIRouter()
logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SUPPORTED_PROVIDERS = frozenset({"github"})


async def _read_body(request: Request, max_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > max_bytes:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="payload too large")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="payload too large")
    return bytes(body)


@router.post("/{provider}", response_model=WebhookAccepted | WebhookIgnored)
async def receive_webhook(
    provider: str,
    request: Request,
    settings: Settings = Depends(get_app_settings),
    record_store: RecordStore = Depends(get_record_store),
    queue: DurableQueue = Depends(get_queue),
    x_github_event: str | None = Header(default=None, alias="X-GitHub-Event"),
    x_github_delivery: str | None = Header(default=None, alias="X-GitHub-Delivery"),
    x_hub_signature_256: str | None = Header(default=None, alias="X-Hub-Signature-256"),
) -> WebhookAccepted | WebhookIgnored:
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown webhook provider: {provider}")
    if not settings.github_webhook_secret:
        logger.error("webhook rejected: webhook secret is not configured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="webhook secret not configured")

    raw_body = await _read_body(request, settings.webhook_max_payload_bytes)
    delivery = x_github_delivery or "unknown"

    if not verify_signature(raw_body, x_hub_signature_256, settings.github_webhook_secret):
        logger.warning("webhook signature rejected delivery=%s event=%s", delivery, x_github_event)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")
    if not x_github_event:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing X-GitHub-Event header")

    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid JSON payload") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="payload must be a JSON object")

    action = body.get("action") if isinstance(body.get("action"), str) else None
    classification = classify(x_github_event, action)
    if not classification.in_scope:
        logger.info(
            "webhook ignored delivery=%s event=%s action=%s reason=%s",
            delivery,
            x_github_event,
            action,
            classification.reason,
        )
        return WebhookIgnored(event=x_github_event, delivery=delivery, reason=classification.reason)

    try:
        event = PullRequestEvent.model_validate(body)
    except ValidationError as exc:
        logger.warning("webhook payload invalid delivery=%s errors=%s", delivery, exc.error_count())
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid pull_request payload") from exc

    service = IngestionService(record_store=record_store, queue=queue)
    with tracer.start_as_current_span("webhook.ingest") as span:
        span.set_attribute("webhook.delivery", delivery)
        span.set_attribute("webhook.action", event.action)
        try:
            outcome = await service.ingest(event, delivery_id=x_github_delivery)
        except (RecordStoreUnavailableError, QueueUnavailableError) as exc:
            logger.error("webhook ingestion unavailable delivery=%s: %s", delivery, exc)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="storage unavailable",
            ) from exc
        except (RecordStoreError, QueueError) as exc:
            logger.exception("webhook ingestion failed delivery=%s", delivery)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="ingestion failed",
            ) from exc

    return WebhookAccepted(
        event=x_github_event,
        delivery=delivery,
        queued=outcome.enqueue.accepted,
        outcome=outcome.enqueue.outcome,
        job_id=outcome.job.id,
        job_key=outcome.enqueue.job_key,
    )
