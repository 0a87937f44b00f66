import json
import logging
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .agents import DEFAULT_MANAGEMENT_PORT, DEFAULT_TERMINAL_PORT, default_ports

logger = logging.getLogger(__name__)

TERMINAL_PORT_KEY = "terminal"


class RemoteSettings(BaseSettings):
    """Settings of the on-machine management service.

    The credential keys come from the same env file the agent services use;
    the rest are fixed by the setup script through the unit's Environment=.
    """

    model_config = SettingsConfigDict(extra="ignore")

    # Bearer token == the account password
    OPENCODE_SERVER_USERNAME: str = "devbox"
    OPENCODE_SERVER_PASSWORD: str = ""

    DEVBOX_USER: str = "devbox"
    DEVBOX_HOME: str = "/home/devbox"
    DEVBOX_ENV_FILE: str = "/home/devbox/.env"
    DEVBOX_PORTS_FILE: str = "/opt/devbox-mgmt/ports.json"
    DEVBOX_MGMT_SERVICE: str = "devbox-mgmt.service"
    DEVBOX_MGMT_PORT: int = DEFAULT_MANAGEMENT_PORT
    DEVBOX_RESTART_DELAY_SECONDS: float = 1.0
    DEVBOX_COMMAND_TIMEOUT_SECONDS: int = 600

    @property
    def unit_dir(self) -> Path:
        return Path(self.DEVBOX_HOME) / ".config" / "systemd" / "user"

    def load_ports(self) -> dict[str, int]:
        """Port assignments written at first boot, falling back to defaults."""
        ports = default_ports()
        ports[TERMINAL_PORT_KEY] = DEFAULT_TERMINAL_PORT
        path = Path(self.DEVBOX_PORTS_FILE)
        if not path.exists():
            return ports
        try:
            stored = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable ports file %s: %s", path, exc)
            return ports
        ports.update({k: int(v) for k, v in stored.items() if k in ports})
        return ports
