from app.models.base import Base, TimestampMixin
from app.models.user import User
from app.models.server import Server
from app.models.provisioning_log import ProvisioningLog

__all__ = [
    "Base",
    "TimestampMixin",
    "User",
    "Server",
    "ProvisioningLog",
]
