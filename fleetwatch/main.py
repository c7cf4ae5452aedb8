import asyncio
import contextlib
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, clear_contextvars

from fleetwatch.api.v1.routers.health import router as health_router
from fleetwatch.api.v1.routers.machine_logs import router as machine_logs_router
from fleetwatch.api.v1.routers.snapshots import router as snapshots_router
from fleetwatch.api.v1.routers.usage import router as usage_router
from fleetwatch.core.config import settings
from fleetwatch.core.db import build_engine, build_session_factory, create_schema
from fleetwatch.core.errors import SourceUnavailableError, ValidationError
from fleetwatch.core.logging import configure_logging, get_logger
from fleetwatch.services import retention
from fleetwatch.services.change_feed import ChangeFeed
from fleetwatch.services.source import SqlTelemetrySource
from fleetwatch.services.usage import UsageAggregator

log = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    engine = build_engine(settings.database_url_async)
    if settings.auto_create_schema:
        await create_schema(engine)

    source = SqlTelemetrySource(build_session_factory(engine), ChangeFeed())
    app.state.source = source
    app.state.usage = UsageAggregator(source)

    sweeper = None
    if settings.retention_days > 0:
        sweeper = asyncio.create_task(retention.run_forever(source))

    log.info("app.start", env=settings.env)
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        await engine.dispose()
        log.info("app.stop")


def create_app() -> FastAPI:
    app = FastAPI(title="fleetwatch", lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(machine_logs_router, prefix="/api/v1")
    app.include_router(usage_router, prefix="/api/v1")
    app.include_router(snapshots_router, prefix="/api/v1")

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        log.info("http.request.invalid", error=str(exc))
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(SourceUnavailableError)
    async def source_unavailable_handler(request: Request, exc: SourceUnavailableError):
        log.error("http.request.source_unavailable", error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "telemetry store unavailable"})

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        clear_contextvars()
        bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=str(request.url.path),
            query=str(request.url.query),
            client_ip=request.client.host if request.client else None,
        )

        log.info("http.request.received")

        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = int((time.perf_counter() - start) * 1000)
            log.info(
                "http.response.sent",
                status_code=getattr(response, "status_code", None),
                duration_ms=duration_ms,
            )
            clear_contextvars()

    return app


app = create_app()
