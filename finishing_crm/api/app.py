"""
FastAPI application entry point with health and metrics routes.
"""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from finishing_crm.api.middleware.error_handler import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    service_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from finishing_crm.api.routes import (
    campaigns,
    companies,
    cron,
    distributors,
    engagement,
    outbox,
    sales,
    subscriptions,
    users,
)
from finishing_crm.jobs.outbox_runner import register_outbox_jobs
from finishing_crm.jobs.scheduler import get_scheduler
from finishing_crm.lib.logging import correlation_scope, get_logger
from finishing_crm.lib.metrics import get_metrics_collector
from finishing_crm.lib.settings import settings
from finishing_crm.services.errors import ServiceError

logger = get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Accepts X-Correlation-ID from incoming requests or generates a new one,
    and echoes it on the response.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id

        with correlation_scope(correlation_id):
            logger.info(
                "Incoming request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "client": request.client.host if request.client else None,
                },
            )

            response = await call_next(request)
            response.headers["X-Correlation-ID"] = correlation_id

            logger.info("Response sent", extra={"status_code": response.status_code})
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(f"{settings.app_name} starting up...")
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = get_scheduler()
        register_outbox_jobs(scheduler)
        scheduler.start()
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    logger.info(f"{settings.app_name} shutting down...")


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Back office API: companies, campaigns, outbox job queue and engagement",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)


app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(ServiceError, service_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


app.include_router(users.router)
app.include_router(companies.router)
app.include_router(distributors.router)
app.include_router(campaigns.router)
app.include_router(outbox.router)
app.include_router(engagement.router)
app.include_router(sales.router)
app.include_router(subscriptions.router)
app.include_router(cron.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics_endpoint():
    """
    Prometheus-compatible metrics endpoint.

    Counters and gauges are declared in finishing_crm.lib.metrics.METRICS.
    """
    return PlainTextResponse(
        get_metrics_collector().export_prometheus(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
