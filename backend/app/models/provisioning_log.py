from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base


class LogStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class ProvisioningStep:
    MESH_AUTH_KEY = "tailscale_auth_key"
    CREATE_MACHINE = "hetzner_create"
    SOFTWARE_INSTALL = "software_install"
    RESET_CREDENTIALS = "reset_credentials"

    @staticmethod
    def install_agent(agent: str) -> str:
        return f"install_agent:{agent}"

    @staticmethod
    def uninstall_agent(agent: str) -> str:
        return f"uninstall_agent:{agent}"


class ProvisioningLog(Base):
    """Append-only step record. Rows are inserted, never updated."""

    __tablename__ = "provisioning_logs"

    server_id: Mapped[int] = mapped_column(
        ForeignKey("servers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    server: Mapped["Server"] = relationship(back_populates="logs")


def latest_per_step(entries) -> list:
    """Collapse a log stream to the newest entry per step, in first-seen step order."""
    latest = {}
    for entry in sorted(entries, key=lambda e: e.id):
        latest[entry.step] = entry
    return list(latest.values())
