from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request
import uvicorn

from review_bot.api.router import api_router
from review_bot.core.config import Settings, get_settings
from review_bot.core.telemetry import configure_logging, setup_api_telemetry, shutdown_api_telemetry
from review_bot.services.queue import DurableQueue
from review_bot.services.record_store import PostgresRecordStore, RecordStore
from review_bot.worker import build_database, build_queue

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    record_store: RecordStore | None = None,
    queue: DurableQueue | None = None,
) -> FastAPI:
    """Build the webhook and admin API.

    Record store and queue handles live on ``app.state``. When they are not
    injected, Postgres-backed handles are built from settings and closed on
    shutdown.
    """
    settings = settings or get_settings()
    owns_record_store = record_store is None
    owns_queue = queue is None
    if owns_record_store or owns_queue:
        database = build_database(settings, settings.database_url)
        queue_database = (
            build_database(settings, settings.queue_database_url) if settings.queue_database_url else database
        )
        record_store = record_store or PostgresRecordStore(database)
        queue = queue or build_queue(settings, queue_database)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            shutdown_api_telemetry(app, app.state.telemetry_runtime)
            # Only handles built here are released; injected ones belong to the caller.
            if owns_queue:
                await app.state.queue.close()
            if owns_record_store:
                await app.state.record_store.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.record_store = record_store
    app.state.queue = queue
    app.state.telemetry_runtime = setup_api_telemetry(app, settings)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    app.include_router(api_router)
    return app


configure_logging()
app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("review_bot.main:app", host=settings.api_host, port=settings.api_port)
