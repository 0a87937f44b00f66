"""HTTP surface of the management service.

Every request must carry ``Authorization: Bearer <account password>``; the
check runs before routing. Bodies are JSON; errors are ``{"error": msg}``.

Run on the machine with::

    uvicorn devbox_remote.server:app --host 0.0.0.0 --port 4098
"""

import logging
import secrets
import threading

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from .agents import AgentKind, parse_agent
from .config import RemoteSettings
from .credentials import validate_password, validate_username
from .system import CommandError, SystemManager

logger = logging.getLogger(__name__)


class AgentRequest(BaseModel):
    agent: str

    @field_validator("agent")
    @classmethod
    def known_agent(cls, v: str) -> str:
        parse_agent(v)
        return v


class ResetCredentialsRequest(BaseModel):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def username_format(cls, v: str) -> str:
        return validate_username(v)

    @field_validator("password")
    @classmethod
    def password_format(cls, v: str) -> str:
        return validate_password(v)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request"
    first = errors[0]
    if first.get("type") == "missing":
        return f"{first['loc'][-1]} is required"
    if first.get("type") == "json_invalid":
        return "request body must be valid JSON"
    msg = first.get("msg", "invalid request")
    return msg.removeprefix("Value error, ")


def schedule_self_restart(system: SystemManager, delay: float) -> None:
    """Restart the service on a separate thread once the response is out."""
    timer = threading.Timer(delay, system.restart_management_service)
    timer.daemon = True
    timer.start()


def create_app(
    settings: RemoteSettings | None = None,
    system: SystemManager | None = None,
) -> FastAPI:
    settings = settings or RemoteSettings()
    system = system or SystemManager(settings)

    app = FastAPI(title="DevBox management API", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.system = system

    @app.middleware("http")
    async def require_bearer_token(request: Request, call_next):
        token = settings.OPENCODE_SERVER_PASSWORD
        supplied = request.headers.get("authorization", "")
        if not token or not secrets.compare_digest(
            supplied.encode("utf-8"), f"Bearer {token}".encode("utf-8")
        ):
            return _error(401, "unauthorized")
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, message)
        return _error(400, message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        # Unknown routes and wrong methods are both reported as not found.
        if exc.status_code in (404, 405):
            return _error(404, "not found")
        return _error(exc.status_code, str(exc.detail))

    @app.get("/status")
    def status():
        return {"ok": True, "agents": system.status()}

    @app.post("/install")
    def install(body: AgentRequest):
        kind = AgentKind(body.agent)
        try:
            system.install(kind)
        except CommandError as exc:
            logger.error("Install of %s failed: %s", kind.value, exc)
            return _error(500, str(exc))
        return {"ok": True, "agent": kind.value}

    @app.post("/uninstall")
    def uninstall(body: AgentRequest):
        kind = AgentKind(body.agent)
        try:
            system.uninstall(kind)
        except CommandError as exc:
            logger.error("Uninstall of %s failed: %s", kind.value, exc)
            return _error(500, str(exc))
        return {"ok": True, "agent": kind.value}

    @app.post("/reset-credentials")
    def reset_credentials(body: ResetCredentialsRequest, background_tasks: BackgroundTasks):
        try:
            system.reset_credentials(body.username, body.password)
        except (CommandError, OSError) as exc:
            logger.error("Credential reset failed: %s", exc)
            return _error(500, "Credential reset failed")
        # The new password becomes this service's token only after a restart.
        background_tasks.add_task(
            schedule_self_restart, system, settings.DEVBOX_RESTART_DELAY_SECONDS
        )
        return {"ok": True}

    return app


app = create_app()
