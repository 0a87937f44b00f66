from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from app.core.config import settings
from app.models.server import REGIONS, SERVER_TYPES, normalize_agents
from app.remote.agents import default_ports, parse_agent
from app.remote.credentials import validate_password, validate_username


class ServerCreate(BaseModel):
    region: str
    server_type: str
    agents: list[str] = Field(default_factory=list)
    # Optional per-agent port overrides; unset agents keep their default port
    agent_ports: dict[str, int] | None = None

    @field_validator("region")
    @classmethod
    def known_region(cls, v: str) -> str:
        if v not in REGIONS:
            raise ValueError(f"region must be one of: {', '.join(REGIONS)}")
        return v

    @field_validator("server_type")
    @classmethod
    def known_server_type(cls, v: str) -> str:
        if v not in SERVER_TYPES:
            raise ValueError(f"server_type must be one of: {', '.join(SERVER_TYPES)}")
        return v

    @field_validator("agents")
    @classmethod
    def known_agents(cls, v: list[str]) -> list[str]:
        for agent in v:
            parse_agent(agent)
        return normalize_agents(v)

    @field_validator("agent_ports")
    @classmethod
    def valid_ports(cls, v: dict[str, int] | None) -> dict[str, int] | None:
        if not v:
            return None
        ports = {}
        for agent, port in v.items():
            kind = parse_agent(agent)
            if not 1024 <= port <= 65535:
                raise ValueError(f"Port for {kind.value} must be between 1024 and 65535")
            if port in (settings.MANAGEMENT_PORT, settings.TERMINAL_PORT):
                raise ValueError(f"Port {port} is reserved")
            ports[kind.value] = port
        merged = {**default_ports(), **ports}
        if len(set(merged.values())) != len(merged):
            raise ValueError("Agent ports must be distinct")
        return ports


class ServerRead(BaseModel):
    id: int
    name: str
    region: str
    server_type: str
    status: str
    status_message: str | None
    agents: list[str]
    agent_ports: dict[str, int]
    hetzner_server_id: str | None
    public_ip: str | None
    tailscale_name: str | None
    tailscale_domain: str | None
    tailscale_ip: str | None
    username: str
    health_status: str | None
    last_health_check: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ServerAccess(BaseModel):
    """Decrypted login details; only returned to the owner on request."""

    username: str
    password: str
    hostname: str | None
    urls: dict[str, str]


class AgentRequest(BaseModel):
    agent: str

    @field_validator("agent")
    @classmethod
    def known_agent(cls, v: str) -> str:
        return parse_agent(v).value


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


class ProvisioningLogRead(BaseModel):
    id: int
    step: str
    status: str
    message: str | None
    timestamp: datetime

    model_config = {"from_attributes": True}
