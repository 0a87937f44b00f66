from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin
from app.remote.agents import AGENTS, AgentKind


class ServerStatus(str, Enum):
    PROVISIONING = "provisioning"
    INSTALLING = "installing"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    DELETING = "deleting"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


REGIONS = ("ash", "hil", "nbg1", "fsn1", "hel1")
SERVER_TYPES = ("cx23", "cx33", "cpx21", "cpx31")

# Forward-only lifecycle; deleting is terminal and reachable from anywhere.
ALLOWED_TRANSITIONS: dict[ServerStatus, frozenset[ServerStatus]] = {
    ServerStatus.PROVISIONING: frozenset(
        {ServerStatus.INSTALLING, ServerStatus.ERROR, ServerStatus.DELETING}
    ),
    ServerStatus.INSTALLING: frozenset(
        {ServerStatus.RUNNING, ServerStatus.ERROR, ServerStatus.DELETING}
    ),
    ServerStatus.RUNNING: frozenset(
        {ServerStatus.STOPPED, ServerStatus.ERROR, ServerStatus.DELETING}
    ),
    ServerStatus.STOPPED: frozenset({ServerStatus.RUNNING, ServerStatus.DELETING}),
    ServerStatus.ERROR: frozenset({ServerStatus.DELETING}),
    ServerStatus.DELETING: frozenset(),
}


def normalize_agents(agents) -> list[str]:
    """Deduplicate and order agent names by the AgentKind declaration order."""
    wanted = {AgentKind(a).value for a in agents}
    return [kind.value for kind in AgentKind if kind.value in wanted]


class Server(TimestampMixin, Base):
    __tablename__ = "servers"

    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    region: Mapped[str] = mapped_column(String(20), nullable=False)
    server_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Provider identity, known once the machine exists
    hetzner_server_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    public_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Mesh identity
    tailscale_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tailscale_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tailscale_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    agents: Mapped[list[str]] = mapped_column(JSON, default=list)
    agent_ports: Mapped[dict[str, int]] = mapped_column(JSON, default=dict)

    username: Mapped[str] = mapped_column(String(64), default="devbox")
    password_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=ServerStatus.PROVISIONING.value, index=True
    )
    status_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    health_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_health_check: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    owner: Mapped["User"] = relationship(back_populates="servers")
    logs: Mapped[list["ProvisioningLog"]] = relationship(
        back_populates="server",
        cascade="all, delete-orphan",
        order_by="ProvisioningLog.id",
    )

    def can_transition_to(self, new_status: ServerStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[ServerStatus(self.status)]

    def transition_to(self, new_status: ServerStatus, message: str | None = None) -> None:
        if not self.can_transition_to(new_status):
            raise ValueError(f"Cannot move server from {self.status} to {new_status.value}")
        self.status = new_status.value
        self.status_message = message

    def port_for(self, agent: str) -> int:
        kind = AgentKind(agent)
        return (self.agent_ports or {}).get(kind.value, AGENTS[kind].default_port)

    def has_agent(self, agent: str) -> bool:
        return AgentKind(agent).value in (self.agents or [])
