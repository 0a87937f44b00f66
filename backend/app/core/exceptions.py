"""Domain exceptions and global exception handlers for the FastAPI application."""

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError

logger = logging.getLogger(__name__)


class DevBoxError(Exception):
    """Base class for errors surfaced to API callers with a fixed status code."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(DevBoxError):
    """Fatal misconfiguration, e.g. a missing or malformed ENCRYPTION_KEY."""


class DecryptionError(DevBoxError):
    """A sealed value could not be authenticated with the current key."""


class AuthenticationError(DevBoxError):
    status_code = 401


class AccessDeniedError(DevBoxError):
    status_code = 403


class MissingCredentialsError(DevBoxError):
    status_code = 400


class InvalidRequestError(DevBoxError):
    status_code = 400


class ServerStateError(DevBoxError):
    status_code = 409


class ProviderError(DevBoxError):
    """The cloud provider rejected or failed a request."""

    status_code = 502


class MeshError(DevBoxError):
    """The mesh network API rejected or failed a request."""

    status_code = 502


class ManagementAPIUnreachable(DevBoxError):
    """The machine's management API did not answer at all."""

    status_code = 502


class ManagementAPIError(DevBoxError):
    """The management API answered with a non-success status."""

    status_code = 502

    def __init__(self, message: str, remote_status: int | None = None):
        super().__init__(message)
        self.remote_status = remote_status


def register_exception_handlers(app: FastAPI) -> None:
    """Register all custom exception handlers on the FastAPI application."""

    @app.exception_handler(DevBoxError)
    async def devbox_error_handler(request: Request, exc: DevBoxError) -> JSONResponse:
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "%s on %s %s: %s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Return a clean 422 with structured validation errors."""
        errors = []
        for err in exc.errors():
            field = " -> ".join(str(loc) for loc in err.get("loc", []))
            errors.append({
                "field": field,
                "message": err.get("msg", "Validation error"),
                "type": err.get("type", "unknown"),
            })
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation error",
                "errors": errors,
            },
        )

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(
        request: Request, exc: IntegrityError
    ) -> JSONResponse:
        """Handle database integrity constraint violations (unique, FK, etc.)."""
        error_msg = str(exc.orig) if exc.orig else str(exc)

        if "unique" in error_msg.lower() or "duplicate" in error_msg.lower():
            detail = "A record with this value already exists"
        elif "foreign key" in error_msg.lower():
            detail = "Referenced record does not exist or cannot be removed"
        else:
            detail = "Database constraint violation"

        logger.warning(
            "IntegrityError on %s %s: %s",
            request.method,
            request.url.path,
            error_msg,
        )
        return JSONResponse(status_code=409, content={"detail": detail})

    @app.exception_handler(OperationalError)
    async def operational_error_handler(
        request: Request, exc: OperationalError
    ) -> JSONResponse:
        """Handle database connection/operational errors."""
        logger.error(
            "Database operational error on %s %s: %s",
            request.method,
            request.url.path,
            str(exc),
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Service temporarily unavailable"},
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Catch-all for unhandled exceptions: log full traceback, return 500."""
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.url.path,
            str(exc),
            traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
