"""Operations on a running machine through its management API.

Each call checks its preconditions locally first, then talks to the machine,
and only patches the record once the machine agreed.
"""

import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.encryption import encrypt_value, try_decrypt_value
from app.core.exceptions import DevBoxError, InvalidRequestError, ServerStateError
from app.models.provisioning_log import LogStatus, ProvisioningLog, ProvisioningStep
from app.models.server import Server, ServerStatus, normalize_agents
from app.services.management_client import ManagementClient

logger = logging.getLogger(__name__)


def _require_running(server: Server, action: str) -> None:
    if server.status != ServerStatus.RUNNING.value:
        raise ServerStateError(f"Server must be running to {action}")
    if not server.public_ip:
        raise ServerStateError("Server has no public address")


def _client(server: Server, transport: httpx.AsyncBaseTransport | None) -> ManagementClient:
    return ManagementClient(
        server.public_ip,
        try_decrypt_value(server.password_encrypted),
        transport=transport,
    )


def _log(db: AsyncSession, server: Server, step: str, status: LogStatus, message: str | None = None) -> None:
    db.add(ProvisioningLog(server_id=server.id, step=step, status=status.value, message=message))


async def _call(db: AsyncSession, server: Server, step: str, call) -> None:
    try:
        await call
    except DevBoxError as exc:
        _log(db, server, step, LogStatus.ERROR, exc.message)
        await db.commit()
        raise


async def install_agent(
    db: AsyncSession,
    server: Server,
    agent: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Server:
    _require_running(server, "install agents")
    if server.has_agent(agent):
        raise InvalidRequestError(f"{agent} is already installed")

    step = ProvisioningStep.install_agent(agent)
    async with _client(server, transport) as client:
        await _call(db, server, step, client.install(agent))

    server.agents = normalize_agents([*server.agents, agent])
    _log(db, server, step, LogStatus.SUCCESS, f"{agent} installed")
    await db.commit()
    await db.refresh(server)
    logger.info("Installed %s on server %d", agent, server.id)
    return server


async def uninstall_agent(
    db: AsyncSession,
    server: Server,
    agent: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Server:
    _require_running(server, "uninstall agents")
    if not server.has_agent(agent):
        raise InvalidRequestError(f"{agent} is not installed")

    step = ProvisioningStep.uninstall_agent(agent)
    async with _client(server, transport) as client:
        await _call(db, server, step, client.uninstall(agent))

    server.agents = [a for a in server.agents if a != agent]
    _log(db, server, step, LogStatus.SUCCESS, f"{agent} uninstalled")
    await db.commit()
    await db.refresh(server)
    logger.info("Uninstalled %s from server %d", agent, server.id)
    return server


async def reset_credentials(
    db: AsyncSession,
    server: Server,
    username: str,
    password: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Server:
    """Rotate the login; the machine is still authenticated with the old password."""
    _require_running(server, "reset credentials")

    step = ProvisioningStep.RESET_CREDENTIALS
    async with _client(server, transport) as client:
        await _call(db, server, step, client.reset_credentials(username, password))

    server.username = username
    server.password_encrypted = encrypt_value(password)
    _log(db, server, step, LogStatus.SUCCESS, "Credentials updated")
    await db.commit()
    await db.refresh(server)
    logger.info("Reset credentials on server %d", server.id)
    return server
