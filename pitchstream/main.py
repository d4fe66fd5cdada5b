"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from pitchstream.core.config import settings
from pitchstream.core.logging import log_error, setup_logging
from pitchstream.core.metrics import get_content_type, get_metrics, set_app_info
from pitchstream.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from pitchstream.core.tracing import setup_tracing, shutdown_tracing
from pitchstream.modules.pitch.router import router as pitch_router
from pitchstream.modules.streaming.router import router as streaming_router
from pitchstream.modules.transcoding.worker import get_worker

logger = logging.getLogger(__name__)

ENVIRONMENT = "development" if settings.DEBUG else "production"


@asynccontextmanager
async def lifespan(app: FastAPI):
    worker = get_worker()
    if settings.TRANSCODE_WORKER_ENABLED:
        worker.start()
        if settings.TRANSCODE_RECOVERY_ENABLED:
            try:
                await worker.recover_stale_jobs()
            except SQLAlchemyError as e:
                log_error(logger, "Stale job recovery failed", exception=e)
    yield
    await worker.stop()
    shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Elevator Pitch Streaming API

Upload short pitch videos straight to object storage, have them transcoded
into AES-128 encrypted HLS, and play them back through gated proxy routes.

Requests are authenticated upstream; the gateway forwards the caller as
`X-User-Id` and `X-User-Role` headers.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "health",
            "description": "Health and metrics endpoints",
        },
        {
            "name": "elevator-pitch",
            "description": "Upload URLs, upload finalization, retrieval and deletion",
        },
        {
            "name": "elevator-pitch-streaming",
            "description": "Encrypted HLS playback - playlists, segments and keys",
        },
    ],
)

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=ENVIRONMENT,
    enable_console_export=settings.DEBUG,
)

set_app_info(version=settings.VERSION, environment=ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict:
    """Service health including the transcode worker."""
    worker_status = get_worker().status()
    healthy = worker_status.running or not settings.TRANSCODE_WORKER_ENABLED
    return {
        "status": "healthy" if healthy else "degraded",
        "worker": {
            "running": worker_status.running,
            "busy": worker_status.busy,
            "queue_depth": worker_status.queue_depth,
            "processed": worker_status.processed,
            "failed": worker_status.failed,
        },
    }


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(pitch_router, prefix=settings.API_V1_PREFIX)
app.include_router(streaming_router, prefix=settings.API_V1_PREFIX)
