import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.encryption import encrypt_value, try_decrypt_value
from app.core.exceptions import MissingCredentialsError, ServerStateError
from app.core.security import generate_password, generate_server_name
from app.models.provisioning_log import ProvisioningLog, latest_per_step
from app.models.server import Server, ServerStatus
from app.models.user import User
from app.remote.agents import AgentKind
from app.schemas.server import ServerAccess, ServerCreate

logger = logging.getLogger(__name__)


async def list_servers(db: AsyncSession, user: User) -> list[Server]:
    result = await db.execute(
        select(Server)
        .where(Server.owner_id == user.id)
        .order_by(Server.created_at.desc(), Server.id.desc())
    )
    return list(result.scalars().all())


async def get_server(db: AsyncSession, server_id: int, user: User) -> Server | None:
    result = await db.execute(
        select(Server).where(Server.id == server_id, Server.owner_id == user.id)
    )
    return result.scalar_one_or_none()


def _missing_credentials(user: User) -> list[str]:
    missing = []
    if not user.hetzner_api_key_encrypted:
        missing.append("Hetzner API key")
    if not user.tailscale_api_key_encrypted:
        missing.append("Tailscale API key")
    if not user.tailscale_tailnet:
        missing.append("Tailscale tailnet ID")
    return missing


async def create_server(db: AsyncSession, data: ServerCreate, user: User) -> Server:
    """Create the record for a new machine; provisioning itself runs in a worker.

    Nothing is written when the user lacks any provider credential.
    """
    missing = _missing_credentials(user)
    if missing:
        raise MissingCredentialsError(f"Missing provider credentials: {', '.join(missing)}")

    server = Server(
        owner_id=user.id,
        name=generate_server_name(),
        region=data.region,
        server_type=data.server_type,
        agents=data.agents,
        agent_ports=data.agent_ports or {},
        username=settings.SERVER_USERNAME,
        password_encrypted=encrypt_value(generate_password()),
        status=ServerStatus.PROVISIONING.value,
        status_message="Starting provisioning...",
    )
    db.add(server)
    await db.commit()
    await db.refresh(server)
    logger.info("Server %d (%s) created for user %d", server.id, server.name, user.id)
    return server


async def begin_deletion(db: AsyncSession, server: Server) -> Server:
    if not server.can_transition_to(ServerStatus.DELETING):
        raise ServerStateError("Server is already being deleted")
    server.transition_to(ServerStatus.DELETING, "Deleting server...")
    await db.commit()
    await db.refresh(server)
    return server


async def get_server_logs(db: AsyncSession, server: Server, latest: bool = False) -> list[ProvisioningLog]:
    result = await db.execute(
        select(ProvisioningLog)
        .where(ProvisioningLog.server_id == server.id)
        .order_by(ProvisioningLog.id)
    )
    entries = list(result.scalars().all())
    return latest_per_step(entries) if latest else entries


def mesh_hostname(server: Server) -> str | None:
    if not (server.tailscale_name and server.tailscale_domain):
        return None
    return f"{server.tailscale_name}.{server.tailscale_domain}"


def access_details(server: Server) -> ServerAccess:
    """Login details and per-service URLs on the mesh network."""
    hostname = mesh_hostname(server)
    urls = {}
    if hostname:
        for kind in AgentKind:
            if server.has_agent(kind.value):
                urls[kind.value] = f"http://{hostname}:{server.port_for(kind.value)}"
        urls["terminal"] = f"http://{hostname}:{settings.TERMINAL_PORT}"
    return ServerAccess(
        username=server.username,
        password=try_decrypt_value(server.password_encrypted),
        hostname=hostname,
        urls=urls,
    )
