import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.exceptions import register_exception_handlers
from app.core.logging import setup_logging

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
# Polled by load balancers and uptime checks
QUIET_PATHS = frozenset({"/health"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "DevBox API starting up (management port %d, poll ceiling %d x %ds)",
        settings.MANAGEMENT_PORT,
        settings.POLL_MAX_ATTEMPTS,
        settings.POLL_DELAY_SECONDS,
    )
    yield
    logger.info("DevBox API shutting down")


async def log_requests(request: Request, call_next):
    """Tag each request with an id and log method, path, status and duration."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
    request.state.request_id = request_id
    start = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception as exc:
        logger.error(
            "[%s] %s %s -> 500 (%.1fms) %s",
            request_id,
            request.method,
            request.url.path,
            (time.perf_counter() - start) * 1000,
            exc,
        )
        response = JSONResponse(status_code=500, content={"detail": "Internal server error"})
    else:
        if request.url.path not in QUIET_PATHS:
            log_fn = logger.warning if response.status_code >= 400 else logger.info
            log_fn(
                "[%s] %s %s -> %d (%.1fms)",
                request_id,
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - start) * 1000,
            )

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def create_app() -> FastAPI:
    application = FastAPI(
        title="DevBox",
        description="Provisioning and management of remote AI development servers",
        version="0.1.0",
        lifespan=lifespan,
    )
    register_exception_handlers(application)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.middleware("http")(log_requests)
    application.include_router(api_router)

    @application.get("/health")
    async def health_check():
        return {"status": "ok"}

    return application


app = create_app()
