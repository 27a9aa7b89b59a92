from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from webhook_ingest.api.v1 import routes_health, routes_webhook
from webhook_ingest.core.config import Settings, settings as default_settings
from webhook_ingest.core.exceptions import WebhookError
from webhook_ingest.core.logging import configure_logging
from webhook_ingest.db import session
from webhook_ingest.redis import close_redis, create_redis
from webhook_ingest.services.event_processor import EventProcessor
from webhook_ingest.services.idempotency import IdempotencyLedger
from webhook_ingest.services.signature import SignatureValidator
from webhook_ingest.services.webhook_queue import WebhookQueue
from webhook_ingest.services.webhooks import WebhookService
from webhook_ingest.workers.queue_worker import WebhookQueueWorker
from webhook_ingest.workers.retry_worker import WebhookRetryWorker


@dataclass
class Services:
    settings: Settings
    engine: Optional[AsyncEngine]
    session_factory: async_sessionmaker
    redis: Redis
    ledger: IdempotencyLedger
    webhooks: WebhookService
    queue_worker: WebhookQueueWorker
    retry_worker: WebhookRetryWorker


def build_services(cfg: Settings, session_factory: Optional[async_sessionmaker] = None,
                   redis: Optional[Redis] = None) -> Services:
    engine = None
    if session_factory is None:
        engine = session.create_engine(cfg)
        session_factory = session.create_session_factory(engine)
    redis = redis if redis is not None else create_redis(cfg.REDIS_URL)
    stale_after = timedelta(seconds=cfg.WEBHOOK_STALE_PROCESSING_SECONDS)

    ledger = IdempotencyLedger(
        session_factory,
        max_retries=cfg.WEBHOOK_MAX_RETRIES,
        retry_delay_ms=cfg.WEBHOOK_RETRY_DELAY_MS,
    )
    queue = WebhookQueue(
        redis,
        name=cfg.WEBHOOK_QUEUE_NAME,
        max_attempts=cfg.WEBHOOK_QUEUE_MAX_ATTEMPTS,
        backoff_ms=cfg.WEBHOOK_QUEUE_BACKOFF_MS,
        keep_completed=cfg.WEBHOOK_QUEUE_KEEP_COMPLETED,
        keep_failed=cfg.WEBHOOK_QUEUE_KEEP_FAILED,
    )
    webhooks = WebhookService(
        ledger=ledger,
        processor=EventProcessor(session_factory),
        validator=SignatureValidator(cfg.RAZORPAY_WEBHOOK_SECRET),
        provider=cfg.WEBHOOK_PROVIDER,
        queue=queue,
        async_processing=cfg.WEBHOOK_ASYNC_PROCESSING,
        timeout_seconds=cfg.WEBHOOK_TIMEOUT_MS / 1000,
        stale_after=stale_after,
    )
    return Services(
        settings=cfg,
        engine=engine,
        session_factory=session_factory,
        redis=redis,
        ledger=ledger,
        webhooks=webhooks,
        queue_worker=WebhookQueueWorker(
            queue, webhooks,
            concurrency=cfg.WEBHOOK_QUEUE_CONCURRENCY,
            poll_interval=cfg.WEBHOOK_QUEUE_POLL_INTERVAL_MS / 1000,
        ),
        retry_worker=WebhookRetryWorker(
            webhooks,
            interval_seconds=cfg.WEBHOOK_RETRY_SCAN_INTERVAL_SECONDS,
            stale_after=stale_after,
            retention_days=cfg.WEBHOOK_RETENTION_DAYS,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    cfg = services.settings
    # without a secret every webhook gets a 500 and the provider keeps redelivering
    services.webhooks.validator.check_configured()
    if cfg.ENV == "development" and services.engine is not None:
        await session.init_db(services.engine)

    if cfg.ENABLE_BACKGROUND_WORKERS:
        services.retry_worker.start()
        if cfg.WEBHOOK_ASYNC_PROCESSING:
            services.queue_worker.start()
    yield
    await services.queue_worker.stop()
    await services.retry_worker.stop()
    await close_redis(services.redis)
    if services.engine is not None:
        await services.engine.dispose()


def create_app(settings: Optional[Settings] = None, session_factory: Optional[async_sessionmaker] = None,
               redis: Optional[Redis] = None) -> FastAPI:
    cfg = settings or default_settings
    configure_logging(cfg.LOG_LEVEL)

    app = FastAPI(
        title=cfg.PROJECT_NAME,
        version=cfg.PROJECT_VERSION,
        description=cfg.PROJECT_DESCRIPTION,
        lifespan=lifespan
    )
    app.state.services = build_services(cfg, session_factory=session_factory, redis=redis)

    app.include_router(
        routes_health.router,
        prefix="/api/v1"
    )

    app.include_router(
        routes_webhook.router,
        prefix="/api/v1/webhooks",
        tags=["webhooks"]
    )

    @app.exception_handler(WebhookError)
    async def webhook_error_handler(request, ex: WebhookError):
        return JSONResponse(status_code=ex.status_code, content={"success": False, "message": ex.message})

    @app.get("/")
    def root():
        return {"message": "Webhook ingest backend"}
    return app
