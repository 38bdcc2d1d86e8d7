"""
FastAPI server for CreatorScope.

Endpoints:
- POST /api/scraper/run-pipeline: discover creators for a newline separated
  keyword list, streaming progress as Server-Sent Events
- POST /api/pipeline/metrics: 30-day metrics for a list of handles, streamed
  the same way
- GET /api/scraper/pipeline?pipelineId=<id> (also /pipeline): current
  snapshot of one pipeline
- GET /health: uptime, circuit breaker state and process stats

Streams are cancelled by closing the connection; there is no cancel endpoint.

Usage:
    $ uvicorn creatorscope.api.server:app --reload --host 0.0.0.0 --port 8000

    $ curl -N -X POST http://localhost:8000/api/scraper/run-pipeline \
      -H 'Content-Type: application/json' \
      -d '{"keywords":"fitness coach\\nvegan recipes"}'
    data: {"type":"progress","data":{"keyword":"fitness coach","status":"pending",...}}

Configuration:
    - CS_API__HOST=0.0.0.0
    - CS_API__PORT=8000
    - CS_API__ENABLE_CORS=true
    - CS_STREAMING__KEEPALIVE_INTERVAL=15
"""

import json
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psutil
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.sdk.metrics import MeterProvider
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .. import __version__
from ..config.container import Container, get_container
from ..core.errors import PipelineNotFoundError, ValidationError
from ..core.runner import DiscoveryRunner, MetricsRunner
from ..jobs.transforms import parse_handles, parse_keywords
from ..observability.logging import get_logger, setup_logging
from ..observability.metrics import setup_metrics
from ..observability.tracing import get_tracing_manager, setup_tracing
from ..streaming.channel import EventChannel
from ..streaming.session import RunSession

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class RunPipelineRequest(BaseModel):
    keywords: str | list[str] = Field(..., description="Newline separated keywords or a list")


class MetricsRequest(BaseModel):
    profiles: str | list[str] = Field(..., description="Handles, newline/comma separated or a list")


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    circuit_breaker: dict[str, Any]
    pipelines: int
    process: dict[str, float]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _read_body(request: Request, model: type[BaseModel]) -> Any:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body must be JSON") from e
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        fields = dict.fromkeys(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
        missing = ", ".join(fields)
        raise ValidationError(f"Invalid request body: {missing or 'bad shape'}") from e


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    container: Container = app.state.container
    observability = container.settings.observability

    setup_logging(observability.log_level)
    if observability.enable_tracing:
        setup_tracing(
            observability.service_name,
            observability.service_version,
            console_export=observability.console_spans,
        )
    if observability.enable_metrics:
        meter_provider = MeterProvider()
        setup_metrics(
            meter_provider.get_meter(observability.service_name, observability.service_version)
        )

    app.state.startup_time = time.time()
    logger.info("CreatorScope API server ready", version=__version__)

    yield

    logger.info("Shutting down CreatorScope API server...")
    await container.cleanup()
    get_tracing_manager().shutdown()


def create_app(container: Container | None = None) -> FastAPI:
    """Create and configure FastAPI application."""
    container = container or get_container()
    settings = container.settings

    app = FastAPI(
        title="CreatorScope",
        description="Creator discovery and metrics pipelines with live progress streams",
        version=__version__,
        docs_url="/docs" if settings.api.enable_docs else None,
        redoc_url="/redoc" if settings.api.enable_docs else None,
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.startup_time = time.time()

    if settings.api.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.api.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["content-type"],
            expose_headers=["x-run-id"],
        )

    def stream_run(request: Request, driver) -> StreamingResponse:
        session = RunSession(driver, keepalive_interval=settings.streaming.keepalive_interval)
        logger.info("Run accepted", run_id=session.run_id, path=request.url.path)
        return StreamingResponse(
            session.frames(request.is_disconnected),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "X-Run-Id": session.run_id},
        )

    @app.post("/api/scraper/run-pipeline")
    async def run_pipeline_endpoint(request: Request):
        """Run creator discovery for each keyword, streaming progress."""
        body = await _read_body(request, RunPipelineRequest)
        keywords = parse_keywords(body.keywords)
        if not keywords:
            raise ValidationError("At least one keyword is required")
        limit = settings.streaming.max_keywords
        if len(keywords) > limit:
            raise ValidationError(f"Too many keywords: {len(keywords)} (max {limit})")

        runner = DiscoveryRunner(
            container.require("job_gateway"), container.require("pipeline_registry"), settings.scraper
        )

        async def drive(channel: EventChannel) -> None:
            await runner.run(keywords, channel)

        return stream_run(request, drive)

    @app.post("/api/pipeline/metrics")
    async def metrics_pipeline_endpoint(request: Request):
        """Scrape and aggregate 30-day metrics for the given handles, streaming progress."""
        body = await _read_body(request, MetricsRequest)
        handles = parse_handles(body.profiles)
        if not handles:
            raise ValidationError("At least one profile handle is required")
        limit = settings.streaming.max_handles
        if len(handles) > limit:
            raise ValidationError(f"Too many profiles: {len(handles)} (max {limit})")

        runner = MetricsRunner(
            container.require("job_gateway"),
            container.require("pipeline_registry"),
            container.require("profile_sink"),
            settings.scraper,
        )

        async def drive(channel: EventChannel) -> None:
            await runner.run(handles, channel)

        return stream_run(request, drive)

    @app.get("/api/scraper/pipeline")
    @app.get("/pipeline")
    async def pipeline_status_endpoint(request: Request):
        """Current snapshot of one pipeline. Never changes anything."""
        pipeline_id = request.query_params.get("pipelineId")
        if not pipeline_id:
            raise ValidationError("pipelineId query parameter is required")

        pipeline = container.require("pipeline_registry").get_status(pipeline_id)
        return {
            "success": True,
            "pipelineType": pipeline.kind,
            "pipeline": pipeline.to_dict(),
            "progress": pipeline.progress(),
            "results": list(pipeline.results),
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check_endpoint() -> HealthResponse:
        breaker = container.require("scraper_breaker").snapshot()
        process = psutil.Process()
        return HealthResponse(
            status="degraded" if breaker["state"] != "closed" else "healthy",
            version=__version__,
            uptime_seconds=max(0.0, time.time() - app.state.startup_time),
            circuit_breaker=breaker,
            pipelines=len(container.require("pipeline_registry")),
            process={
                "memory_rss_mb": process.memory_info().rss / (1024 * 1024),
                "cpu_percent": process.cpu_percent(interval=None),
            },
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.info("Rejected request", path=request.url.path, error=str(exc))
        return _error(400, str(exc))

    @app.exception_handler(PipelineNotFoundError)
    async def not_found_handler(request: Request, exc: PipelineNotFoundError) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled API exception at {request.url.path}: {exc}")
        message = str(exc) if settings.environment == "development" else "An unexpected error occurred"
        return _error(500, message)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    api = get_container().settings.api
    uvicorn.run(
        "creatorscope.api.server:app",
        host=api.host,
        port=api.port,
        reload=api.reload,
        workers=api.workers if not api.reload else 1,
    )
