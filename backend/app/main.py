from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import app.attachment.models  # noqa: F401
import app.audit.models  # noqa: F401
import app.outbox.models  # noqa: F401
from app.attachment.router import router as attachment_router
from app.audit.router import router as audit_router
from app.common.exceptions import register_exception_handlers
from app.common.request_context import reset_request_id, resolve_request_id, set_request_id
from app.common.schemas import ApiResponse
from app.config import get_settings
from app.outbox.router import router as outbox_router
from app.scheduler import setup_scheduler, shutdown_scheduler

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    setup_scheduler()
    yield
    shutdown_scheduler()


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan,
)

cors_origins = settings.cors_origins_list()
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

register_exception_handlers(app, debug=settings.debug)


@app.middleware("http")
async def request_logging_middleware(request, call_next):
    logger = logging.getLogger("app.request")
    request_id = resolve_request_id(request.headers.get("x-request-id"))
    request.state.request_id = request_id
    token = set_request_id(request_id)
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.exception(
            "request_failed request_id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
        )
        raise
    finally:
        reset_request_id(token)

    duration_ms = (time.perf_counter() - start) * 1000.0
    response.headers["x-request-id"] = request_id
    log_fn = logger.info
    if response.status_code >= 500:
        log_fn = logger.error
    elif response.status_code >= 400:
        log_fn = logger.warning
    log_fn(
        "request_completed request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    if response.headers.get("x-fallback-source"):
        logger.info("fallback_served request_id=%s path=%s", request_id, request.url.path)
    return response

# Register routers
app.include_router(attachment_router)
app.include_router(outbox_router)
app.include_router(audit_router)


@app.get("/health", response_model=ApiResponse)
def health() -> ApiResponse:
    return ApiResponse.ok({"status": "ok"})
