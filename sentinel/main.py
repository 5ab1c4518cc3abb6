"""
SentinelAI dashboard API: app wiring, error mapping and request logging.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from sentinel.api.auth_routes import router as auth_router
from sentinel.api.proxy_routes import router as proxy_router
from sentinel.api.routes import router
from sentinel.api.status_routes import router as status_router
from sentinel.config import settings
from sentinel.context import AppContext
from sentinel.db.session import close_engines
from sentinel.exceptions import (
    IdentityProviderError,
    InputValidationError,
    NotAuthenticatedError,
    PaymentError,
    PersistenceError,
    PlanNotFoundError,
    RecordNotFoundError,
    RequestFailedError,
    SentinelError,
    StorageError,
    TokenError,
    code_of,
    message_of,
)
from sentinel.observability import (
    get_logger,
    log_context,
    metrics,
    setup_logging,
    setup_tracing,
)
from sentinel.observability.tracing import instrument_fastapi

REQUEST_ID_HEADER = "X-Request-ID"

setup_logging()
logger = get_logger(__name__)

# Checked in order; subclasses before their bases.
ERROR_STATUS: tuple[tuple[type[SentinelError], int], ...] = (
    (InputValidationError, 422),
    (NotAuthenticatedError, 401),
    (TokenError, 402),
    (RecordNotFoundError, 404),
    (PersistenceError, 500),
    (PaymentError, 502),
    (StorageError, 502),
    (PlanNotFoundError, 404),
)


def status_for(exc: SentinelError) -> int:
    if isinstance(exc, IdentityProviderError):
        return exc.status_code
    if isinstance(exc, PaymentError | StorageError) and exc.status_code:
        return exc.status_code
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup and shutdown.

    Builds the shared clients at startup and closes them at shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        scan_api=settings.scan_api_root,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )
    context = AppContext.create(settings)
    context.start()
    app.state.context = context

    yield

    logger.info("application_shutting_down")
    await context.close()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(SentinelError)
async def sentinel_exception_handler(request: Request, exc: SentinelError) -> Response:
    """Map domain errors to status codes. Upstream scan failures are relayed verbatim."""
    if isinstance(exc, RequestFailedError):
        logger.warning(
            "upstream_request_failed",
            path=request.url.path,
            status_code=exc.status_code,
        )
        return PlainTextResponse(exc.body, status_code=exc.status_code)

    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "domain_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        code=code_of(exc),
        status_code=status_code,
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": message_of(exc), "code": code_of(exc)},
    )


@app.exception_handler(httpx.HTTPError)
async def upstream_unreachable_handler(request: Request, exc: httpx.HTTPError) -> Response:
    logger.error("upstream_unreachable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=502,
        content={"detail": message_of(exc), "code": "upstream_unreachable"},
    )


def _clean_validation_error(error: dict[str, Any]) -> dict[str, Any]:
    cleaned = {key: error.get(key) for key in ("type", "loc", "msg", "input")}
    # ctx can hold exception instances that JSON cannot encode
    if "ctx" in error:
        cleaned["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
    return cleaned


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    errors = [_clean_validation_error(error) for error in exc.errors()]
    logger.warning(
        "request_rejected", path=request.url.path, method=request.method, errors=errors
    )
    return JSONResponse(status_code=422, content={"detail": errors})


setup_tracing()
instrument_fastapi(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.site_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Time each request, bind its id to every log line and echo the id back."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
    path, method = request.url.path, request.method
    in_flight = metrics.http_requests_in_progress.labels(endpoint=path, method=method)
    started = time.perf_counter()
    in_flight.inc()

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=path)
        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = time.perf_counter() - started
            metrics.record_http_request(path, method, 500, elapsed)
            metrics.record_error(type(exc).__name__, "http_request")
            logger.exception("request_failed", method=method, path=path, duration_seconds=elapsed)
            raise
        finally:
            in_flight.dec()

        elapsed = time.perf_counter() - started
        metrics.record_http_request(path, method, response.status_code, elapsed)
        logger.info(
            "request_completed",
            method=method,
            path=path,
            status_code=response.status_code,
            duration_seconds=elapsed,
        )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


app.include_router(router)
app.include_router(auth_router)
app.include_router(proxy_router)
app.include_router(status_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus metrics in text format."""
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sentinel.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
