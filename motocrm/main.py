"""
motocrm - chat-platform synchronization service for the motorcycle-financing CRM.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from motocrm import __version__
from motocrm.config import Settings, get_settings
from motocrm.api.router import api_router
from motocrm.services.container import Services, build_services
from motocrm.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("motocrm")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuses the caller's X-Correlation-ID or mints one, and echoes it back."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def _init_sentry(settings: Settings) -> None:
    try:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, traces_sample_rate=0.1, environment=settings.app_env)
        logger.info("Sentry initialized")
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))


async def _stop_workers(tasks: list[asyncio.Task], timeout: float = 10.0) -> None:
    for task in tasks:
        task.cancel()
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("motocrm starting up (env=%s)", settings.app_env)

    if not settings.manychat_api_key:
        logger.warning("MANYCHAT_API_KEY not set - outbound syncs will fail until configured.")
    if not settings.manychat_webhook_verify_token:
        logger.warning("MANYCHAT_WEBHOOK_VERIFY_TOKEN not set - webhook verification will be rejected.")
    if settings.sentry_dsn:
        _init_sentry(settings)

    # Injected services (tests) are owned by the caller and not closed here
    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        app.state.services = build_services(settings)
    services: Services = app.state.services

    worker_tasks: list[asyncio.Task] = []
    if services.settings.sync_drain_enabled:
        from motocrm.workers.sync_drain import run_sync_drain_worker
        worker_tasks.append(asyncio.create_task(run_sync_drain_worker(
            services.sync_queue,
            interval_seconds=services.settings.sync_drain_interval_seconds,
            retention_days=services.settings.sync_retention_days,
        )))
        logger.info("Sync drain worker started")

    yield

    logger.info("motocrm shutting down - stopping %d workers...", len(worker_tasks))
    await services.bulk_sync.shutdown()
    await _stop_workers(worker_tasks)

    if owns_services:
        from motocrm.database import dispose_engine
        from motocrm.utils.redis_client import close_redis
        await dispose_engine()
        await close_redis()
    logger.info("motocrm shutdown complete")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Application factory. Pass services to inject fakes (tests)."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="motocrm",
        description="Chat-platform synchronization service for the motorcycle-financing CRM",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.services = services

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
