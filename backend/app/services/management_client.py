"""Client side of the management API running on each provisioned machine."""

import logging

import httpx

from app.core.config import settings
from app.core.exceptions import ManagementAPIError, ManagementAPIUnreachable

logger = logging.getLogger(__name__)

_PREDATES_AGENT_MANAGEMENT = (
    "Management API unreachable on this server. "
    "This server was provisioned before agent management was available. "
    "Delete and recreate the server to enable one-click agent installs."
)
_PREDATES_CREDENTIAL_RESET = (
    "Management API unreachable on this server. "
    "This server was provisioned before credential reset was available. "
    "Delete and recreate the server to enable this feature."
)


def management_url(host: str, port: int | None = None) -> str:
    return f"http://{host}:{port or settings.MANAGEMENT_PORT}"


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return resp.text or resp.reason_phrase


class ManagementClient:
    """Async client used by request handlers for lifecycle operations."""

    def __init__(
        self,
        host: str,
        token: str,
        port: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host
        self._client = httpx.AsyncClient(
            base_url=management_url(host, port),
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    async def _call(
        self,
        method: str,
        path: str,
        action: str,
        timeout: float,
        unreachable_message: str,
        json: dict | None = None,
    ) -> dict:
        try:
            resp = await self._client.request(method, path, json=json, timeout=timeout)
        except httpx.TransportError as exc:
            logger.warning("Management API on %s unreachable (%s %s): %s", self.host, method, path, exc)
            raise ManagementAPIUnreachable(unreachable_message) from exc

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            logger.warning(
                "Management API on %s answered %d to %s %s: %s",
                self.host,
                resp.status_code,
                method,
                path,
                detail,
            )
            raise ManagementAPIError(f"{action} failed: {detail}", remote_status=resp.status_code)

        try:
            return resp.json()
        except ValueError:
            return {}

    async def status(self) -> dict:
        return await self._call(
            "GET", "/status", "Status", settings.HEALTH_TIMEOUT_SECONDS, _PREDATES_AGENT_MANAGEMENT
        )

    async def install(self, agent: str) -> dict:
        return await self._call(
            "POST",
            "/install",
            "Install",
            settings.INSTALL_TIMEOUT_SECONDS,
            _PREDATES_AGENT_MANAGEMENT,
            json={"agent": agent},
        )

    async def uninstall(self, agent: str) -> dict:
        return await self._call(
            "POST",
            "/uninstall",
            "Uninstall",
            settings.UNINSTALL_TIMEOUT_SECONDS,
            _PREDATES_AGENT_MANAGEMENT,
            json={"agent": agent},
        )

    async def reset_credentials(self, username: str, password: str) -> dict:
        return await self._call(
            "POST",
            "/reset-credentials",
            "Reset",
            settings.RESET_TIMEOUT_SECONDS,
            _PREDATES_CREDENTIAL_RESET,
            json={"username": username, "password": password},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


def probe_status(
    host: str,
    token: str | None = None,
    port: int | None = None,
    timeout: float | None = None,
    transport: httpx.BaseTransport | None = None,
) -> int:
    """GET /status once and return the HTTP status. Network failures raise httpx.HTTPError."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    with httpx.Client(transport=transport, timeout=timeout or settings.POLL_TIMEOUT_SECONDS) as client:
        resp = client.get(f"{management_url(host, port)}/status", headers=headers)
    return resp.status_code


def probe_port(
    host: str,
    port: int,
    timeout: float | None = None,
    transport: httpx.BaseTransport | None = None,
) -> bool:
    """True when anything answers HTTP on the port, whatever the status code."""
    try:
        with httpx.Client(transport=transport, timeout=timeout or settings.HEALTH_TIMEOUT_SECONDS) as client:
            client.get(f"http://{host}:{port}/")
    except httpx.HTTPError:
        return False
    return True
