"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from vodflow.core.config import settings
from vodflow.core.logging import setup_logging
from vodflow.core.metrics import get_metrics, get_metrics_content_type, set_app_info
from vodflow.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from vodflow.core.tracing import setup_tracing, shutdown_tracing
from vodflow.modules.pipeline.router import router as pipeline_router
from vodflow.modules.streaming.router import router as streaming_router


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Flush pending spans on shutdown."""
    yield
    shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan,
    version=settings.VERSION,
    description="""
## vodflow API

Video-on-demand transcoding and streaming.

* **Pipeline** - start, inspect and cancel transcoding runs
* **Streaming** - video listing, video detail with signed master manifest URLs,
  cache-accelerated manifest and segment delivery
    """,
    openapi_tags=[
        {"name": "health", "description": "Health check endpoints"},
        {"name": "pipeline", "description": "Transcoding pipeline runs"},
        {"name": "streaming", "description": "Videos, manifests and segments"},
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
    environment=settings.ENVIRONMENT,
    otlp_endpoint=settings.OTLP_ENDPOINT,
)

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

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
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns:
        dict: Health status with "healthy" value.
    """
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


app.include_router(streaming_router)
app.include_router(pipeline_router)
