import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from gateway.api import transcode
from gateway.api.deps import Engine, Runner, get_engine_locator, get_janitor, get_job_runner, get_workspace_manager
from gateway.config import get_settings
from gateway.exceptions import GatewayError, InternalError, WorkspaceError
from gateway.middleware.request_context import REQUEST_ID_HEADER, RequestContextMiddleware, get_request_context

settings = get_settings()
logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    configure_logging()
    get_engine_locator().locate()
    try:
        get_workspace_manager().ensure_base_dir()
    except WorkspaceError as e:
        logger.error("Work directory unavailable: %s", e)
    janitor = get_janitor()
    if get_settings().janitor_enabled:
        janitor.start()
    yield
    # Shutdown
    await janitor.stop()
    await get_job_runner().shutdown()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Request-ID", "X-Error-Code", "X-Suggested-Fix"],
)
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError) -> PlainTextResponse:
    context = get_request_context(request)
    if exc.status_code >= 500 and exc.status_code != 503:
        logger.error("[%s] %s: %s", context.request_id, exc.code, exc.message)
    else:
        logger.info("[%s] %s: %s", context.request_id, exc.code, exc.message)
    headers = exc.to_headers()
    headers[REQUEST_ID_HEADER] = context.request_id
    return PlainTextResponse(exc.message, status_code=exc.status_code, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> PlainTextResponse:
    """Report malformed form fields (e.g. non-numeric ``start``) as 400."""
    context = get_request_context(request)
    errors = exc.errors()
    if errors:
        first_error = errors[0]
        loc = " -> ".join(str(x) for x in first_error.get("loc", []) if x != "body")
        msg = first_error.get("msg", "Validation error")
        message = f"{loc}: {msg}" if loc else msg
    else:
        message = "Request validation failed"
    return PlainTextResponse(
        message,
        status_code=400,
        headers={"X-Error-Code": "VALIDATION_ERROR", "X-Retryable": "false", REQUEST_ID_HEADER: context.request_id},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    context = get_request_context(request)
    logger.exception("[%s] Unhandled exception: %s", context.request_id, exc)
    error = InternalError()
    headers = error.to_headers()
    headers[REQUEST_ID_HEADER] = context.request_id
    return PlainTextResponse(error.message, status_code=error.status_code, headers=headers)


# Routers
app.include_router(transcode.router, prefix="/api", tags=["transcode"])


@app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "FFmpeg API is online"


@app.get("/health")
async def health_check(engine: Engine, runner: Runner) -> dict:
    return {
        "status": "healthy",
        "version": get_settings().app_version,
        "engine_available": engine.available,
        "active_jobs": runner.active_jobs,
    }


def run() -> None:
    import uvicorn

    uvicorn.run("gateway.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
