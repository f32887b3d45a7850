"""
crmbridge - AmoCRM <-> LPTracker rule-driven synchronization service.
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from crmbridge.config import get_settings
from crmbridge.api.router import api_router
from crmbridge.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("crmbridge")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("crmbridge starting up (env=%s)", settings.app_env)

    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - CRM credentials are read as plaintext. "
            "Generate a Fernet key for production."
        )
    if not settings.admin_api_key:
        logger.warning("ADMIN_API_KEY not set - admin endpoints are unguarded")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    from crmbridge.services.crm_cache import CrmCache
    from crmbridge.services.dispatcher import WebhookDispatcher
    from crmbridge.services.storage import DatabaseStorage
    from crmbridge.services.system_log import SystemLogService
    from crmbridge.workers.webhook_queue import (
        InMemoryWebhookQueue,
        alert_failed_job,
        dispatch_job,
    )

    storage = DatabaseStorage()
    cache = CrmCache.from_settings(settings)
    dispatcher = WebhookDispatcher.from_settings(storage=storage, cache=cache, settings=settings)

    app.state.crm_cache = cache
    app.state.dispatcher = dispatcher
    app.state.queue_enabled = settings.queue_enabled
    queue = None
    if settings.queue_enabled:
        queue = InMemoryWebhookQueue.from_settings(settings, system_log=SystemLogService(storage))
        queue.on_process(dispatch_job(dispatcher))
        queue.on_event("job-failed", alert_failed_job)
        await queue.start()
        app.state.webhook_queue = queue
    else:
        logger.info("Webhook queue disabled (QUEUE_ENABLED=false), processing inline")

    yield

    logger.info("crmbridge shutting down")
    if queue is not None:
        await queue.stop()

    from crmbridge.utils.redis_client import close_redis
    from crmbridge.database import dispose_engine
    await close_redis()
    await dispose_engine()
    logger.info("crmbridge shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level, json_output=settings.app_env != "development")

    application = FastAPI(
        title="crmbridge",
        description="Rule-driven webhook synchronization between AmoCRM and LPTracker",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS - allow the admin dashboard origin
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Admin-Key", "X-Correlation-ID", "Accept", "Origin"],
    )

    # Correlation ID middleware (added after CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
