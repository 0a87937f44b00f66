from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import get_current_user
from app.models.server import Server
from app.models.user import User
from app.remote.agents import parse_agent
from app.schemas.server import (
    AgentRequest,
    ProvisioningLogRead,
    ResetCredentialsRequest,
    ServerAccess,
    ServerCreate,
    ServerRead,
)
from app.services import lifecycle_service
from app.services.server_service import (
    access_details,
    begin_deletion,
    create_server,
    get_server,
    get_server_logs,
    list_servers,
)
from app.workers.provisioning_tasks import provision_server
from app.workers.server_tasks import delete_server

router = APIRouter(prefix="/servers", tags=["servers"])


async def get_owned_server(
    server_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Server:
    server = await get_server(db, server_id, current_user)
    if server is None:
        raise HTTPException(status_code=404, detail="Server not found")
    return server


@router.get("", response_model=list[ServerRead])
async def list_servers_endpoint(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await list_servers(db, current_user)


@router.post("", response_model=ServerRead, status_code=status.HTTP_202_ACCEPTED)
async def create_server_endpoint(
    data: ServerCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    server = await create_server(db, data, current_user)
    provision_server.delay(server.id)
    return server


@router.get("/{server_id}", response_model=ServerRead)
async def get_server_endpoint(server: Server = Depends(get_owned_server)):
    return server


@router.get("/{server_id}/logs", response_model=list[ProvisioningLogRead])
async def get_server_logs_endpoint(
    latest: bool = Query(default=True, description="Collapse to the newest entry per step"),
    server: Server = Depends(get_owned_server),
    db: AsyncSession = Depends(get_db),
):
    return await get_server_logs(db, server, latest=latest)


@router.get("/{server_id}/access", response_model=ServerAccess)
async def get_server_access_endpoint(server: Server = Depends(get_owned_server)):
    return access_details(server)


@router.post("/{server_id}/agents", response_model=ServerRead)
async def install_agent_endpoint(
    body: AgentRequest,
    server: Server = Depends(get_owned_server),
    db: AsyncSession = Depends(get_db),
):
    return await lifecycle_service.install_agent(db, server, body.agent)


@router.delete("/{server_id}/agents/{agent}", response_model=ServerRead)
async def uninstall_agent_endpoint(
    agent: str,
    server: Server = Depends(get_owned_server),
    db: AsyncSession = Depends(get_db),
):
    try:
        kind = parse_agent(agent)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return await lifecycle_service.uninstall_agent(db, server, kind.value)


@router.post("/{server_id}/reset-credentials", response_model=ServerRead)
async def reset_credentials_endpoint(
    body: ResetCredentialsRequest,
    server: Server = Depends(get_owned_server),
    db: AsyncSession = Depends(get_db),
):
    return await lifecycle_service.reset_credentials(db, server, body.username, body.password)


@router.delete("/{server_id}", response_model=ServerRead, status_code=status.HTTP_202_ACCEPTED)
async def delete_server_endpoint(
    server: Server = Depends(get_owned_server),
    db: AsyncSession = Depends(get_db),
):
    server = await begin_deletion(db, server)
    delete_server.delay(server.id)
    return server
