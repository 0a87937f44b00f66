from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin


class User(TimestampMixin, Base):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Provider credentials, sealed by the credential vault
    hetzner_api_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    hetzner_project_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tailscale_api_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    tailscale_tailnet: Mapped[str | None] = mapped_column(String(128), nullable=True)

    servers: Mapped[list["Server"]] = relationship(back_populates="owner", cascade="all, delete-orphan")

    @property
    def has_provisioning_credentials(self) -> bool:
        return bool(
            self.hetzner_api_key_encrypted
            and self.tailscale_api_key_encrypted
            and self.tailscale_tailnet
        )
