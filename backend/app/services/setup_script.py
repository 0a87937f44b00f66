"""Renders the first-boot script handed to a new machine as cloud-init user data.

Every interpolated value is either shell-quoted with ``shlex.quote`` or
base64-encoded and decoded on the machine, so server names, join keys and
passwords cannot break out of the script. Heredocs are always quoted
(``<<'EOF'``) and only carry content generated here.
"""

import base64
import io
import json
import shlex
import tarfile
from dataclasses import dataclass
from importlib import resources

from app.core.config import settings
from app.remote import MODULES, PACKAGE_NAME
from app.remote.agents import (
    AGENTS,
    TERMINAL_SERVICE,
    TTYD_BINARY,
    AgentKind,
    render_user_unit,
    terminal_exec_start,
)
from app.remote.config import TERMINAL_PORT_KEY
from app.remote.credentials import render_env_file

# Hetzner rejects user data above 32 KiB.
MAX_USER_DATA_BYTES = 32 * 1024

MGMT_DIR = "/opt/devbox-mgmt"
MGMT_SERVICE = "devbox-mgmt.service"
READY_MARKER = "/var/lib/devbox/ready"
SETUP_LOG = "/var/log/devbox-setup.log"
REMOTE_REQUIREMENTS = ("fastapi", "uvicorn", "pydantic-settings")


@dataclass(frozen=True)
class ProvisioningConfig:
    username: str = "devbox"
    management_port: int = 4098
    terminal_port: int = 4099
    restrict_management_to_mesh: bool = False

    @classmethod
    def from_settings(cls) -> "ProvisioningConfig":
        return cls(
            username=settings.SERVER_USERNAME,
            management_port=settings.MANAGEMENT_PORT,
            terminal_port=settings.TERMINAL_PORT,
            restrict_management_to_mesh=settings.RESTRICT_MANAGEMENT_TO_MESH,
        )

    @property
    def home(self) -> str:
        return f"/home/{self.username}"

    @property
    def env_file(self) -> str:
        return f"{self.home}/.env"

    @property
    def unit_dir(self) -> str:
        return f"{self.home}/.config/systemd/user"


def _b64(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("ascii")


def _heredoc(path: str, content: str, marker: str = "EOF") -> str:
    return f"cat > {shlex.quote(path)} <<'{marker}'\n{content.rstrip(chr(10))}\n{marker}\n"


def remote_package_archive() -> bytes:
    """The management service package as a gzipped tarball, rooted at its install name."""
    source = resources.files("app.remote")
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for module in MODULES:
            data = source.joinpath(module).read_bytes()
            info = tarfile.TarInfo(f"{PACKAGE_NAME}/{module}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class SetupScriptGenerator:
    def __init__(self, config: ProvisioningConfig | None = None):
        self.config = config or ProvisioningConfig.from_settings()

    def resolve_ports(self, overrides: dict[str, int] | None = None) -> dict[str, int]:
        ports = {kind.value: spec.default_port for kind, spec in AGENTS.items()}
        for agent, port in (overrides or {}).items():
            ports[AgentKind(agent).value] = int(port)
        return ports

    def firewall_ports(self, ports: dict[str, int]) -> list[int]:
        guarded = sorted(set(ports.values()) | {self.config.terminal_port})
        if self.config.restrict_management_to_mesh:
            guarded.append(self.config.management_port)
        return guarded

    def render(
        self,
        server_name: str,
        join_token: str,
        agents: list[str],
        password: str,
        ports: dict[str, int] | None = None,
    ) -> str:
        ports = self.resolve_ports(ports)
        selected = [kind for kind in AgentKind if kind.value in set(agents)]

        sections = [
            self._preamble(),
            self._mesh(server_name, join_token),
            self._account(password, ports),
            self._runtimes(),
            self._firewall(ports),
            self._terminal(),
        ]
        sections.extend(self._agent(kind, ports[kind.value]) for kind in selected)
        sections.append(self._management_api())
        sections.append(
            f"mkdir -p {shlex.quote(READY_MARKER.rsplit('/', 1)[0])}\n"
            f"touch {shlex.quote(READY_MARKER)}\n"
            'echo "=== DevBox setup complete ==="\n'
        )
        return "\n".join(sections)

    # ── sections ──────────────────────────────────────────────────

    def _preamble(self) -> str:
        user = shlex.quote(self.config.username)
        return (
            "#!/bin/bash\n"
            "set -euo pipefail\n"
            f"exec > {SETUP_LOG} 2>&1\n"
            "export DEBIAN_FRONTEND=noninteractive\n"
            'echo "=== DevBox setup starting ==="\n'
            "\n"
            f"DEVBOX_USER={user}\n"
            "\n"
            "user_systemctl() {\n"
            '  runuser -l "$DEVBOX_USER" -c "XDG_RUNTIME_DIR=/run/user/$(id -u "$DEVBOX_USER") systemctl --user $*"\n'
            "}\n"
            "\n"
            "apt-get update\n"
            "apt-get install -y curl wget git jq unzip python3-venv iptables iptables-persistent\n"
        )

    def _mesh(self, server_name: str, join_token: str) -> str:
        return (
            "# Mesh network\n"
            "command -v tailscale >/dev/null 2>&1 || curl -fsSL https://tailscale.com/install.sh | sh\n"
            "systemctl enable --now tailscaled\n"
            f"tailscale up --authkey={shlex.quote(join_token)} --hostname={shlex.quote(server_name)}\n"
        )

    def _account(self, password: str, ports: dict[str, int]) -> str:
        cfg = self.config
        home = shlex.quote(cfg.home)
        env_file = shlex.quote(cfg.env_file)
        port_map = dict(ports, **{TERMINAL_PORT_KEY: cfg.terminal_port})
        return (
            "# Account, credentials and port assignments\n"
            'id -u "$DEVBOX_USER" >/dev/null 2>&1 || useradd -m -s /bin/bash "$DEVBOX_USER"\n'
            'loginctl enable-linger "$DEVBOX_USER"\n'
            f"mkdir -p {shlex.quote(cfg.unit_dir)}\n"
            f"echo {shlex.quote(_b64(render_env_file(cfg.username, password)))} | base64 -d > {env_file}\n"
            f'chown "$DEVBOX_USER": {env_file}\n'
            f"chmod 600 {env_file}\n"
            f"chown -R \"$DEVBOX_USER\": {home}/.config\n"
            f"mkdir -p {MGMT_DIR}\n"
            f"echo {shlex.quote(_b64(json.dumps(port_map, sort_keys=True)))} | base64 -d > {MGMT_DIR}/ports.json\n"
        )

    def _runtimes(self) -> str:
        return (
            "# Node.js for the CLI agents, ttyd for web terminals\n"
            "if ! command -v node >/dev/null 2>&1; then\n"
            "  curl -fsSL https://deb.nodesource.com/setup_22.x | bash -\n"
            "  apt-get install -y nodejs\n"
            "fi\n"
            f"if [ ! -x {TTYD_BINARY} ]; then\n"
            f"  wget -O {TTYD_BINARY} https://github.com/tsl0922/ttyd/releases/latest/download/ttyd.x86_64\n"
            f"  chmod +x {TTYD_BINARY}\n"
            "fi\n"
        )

    def _firewall(self, ports: dict[str, int]) -> str:
        port_list = " ".join(str(p) for p in self.firewall_ports(ports))
        return (
            "# Packet filter: service ports only from the mesh interface\n"
            "TS_IFACE=$(ip -o link show | grep -oP 'tailscale\\d+' | head -1 || true)\n"
            'TS_IFACE="${TS_IFACE:-tailscale0}"\n'
            f"for PORT in {port_list}; do\n"
            '  iptables -C INPUT -i "$TS_IFACE" -p tcp --dport "$PORT" -j ACCEPT 2>/dev/null \\\n'
            '    || iptables -A INPUT -i "$TS_IFACE" -p tcp --dport "$PORT" -j ACCEPT\n'
            '  iptables -C INPUT -p tcp --dport "$PORT" -j DROP 2>/dev/null \\\n'
            '    || iptables -A INPUT -p tcp --dport "$PORT" -j DROP\n'
            "done\n"
            "mkdir -p /etc/iptables\n"
            "iptables-save > /etc/iptables/rules.v4\n"
        )

    def _enable_user_unit(self, service: str) -> str:
        return (
            f'chown -R "$DEVBOX_USER": {shlex.quote(self.config.home)}/.config\n'
            "user_systemctl daemon-reload\n"
            f"user_systemctl enable --now {service}\n"
        )

    def _terminal(self) -> str:
        cfg = self.config
        unit = render_user_unit(
            "Web Terminal (bash)", terminal_exec_start(cfg.terminal_port), cfg.env_file, cfg.home
        )
        return (
            f"# Web terminal on port {cfg.terminal_port}\n"
            + _heredoc(f"{cfg.unit_dir}/{TERMINAL_SERVICE}", unit, "UNIT")
            + self._enable_user_unit(TERMINAL_SERVICE)
        )

    def _agent(self, kind: AgentKind, port: int) -> str:
        cfg = self.config
        spec = AGENTS[kind]
        unit = render_user_unit(spec.label, spec.render_exec_start(port, cfg.home), cfg.env_file, cfg.home)
        return (
            f"# Agent: {kind.value} on port {port}\n"
            f"{spec.render_install(cfg.username, cfg.home)}\n"
            + _heredoc(f"{cfg.unit_dir}/{spec.service_name}", unit, "UNIT")
            + self._enable_user_unit(spec.service_name)
        )

    def management_unit(self) -> str:
        cfg = self.config
        return (
            "[Unit]\n"
            "Description=DevBox Management API\n"
            "After=network.target tailscaled.service\n"
            "\n"
            "[Service]\n"
            "Type=simple\n"
            "User=root\n"
            f"EnvironmentFile={cfg.env_file}\n"
            f"Environment=DEVBOX_USER={cfg.username}\n"
            f"Environment=DEVBOX_HOME={cfg.home}\n"
            f"Environment=DEVBOX_ENV_FILE={cfg.env_file}\n"
            f"Environment=DEVBOX_PORTS_FILE={MGMT_DIR}/ports.json\n"
            f"Environment=DEVBOX_MGMT_SERVICE={MGMT_SERVICE}\n"
            f"Environment=DEVBOX_MGMT_PORT={cfg.management_port}\n"
            f"WorkingDirectory={MGMT_DIR}\n"
            f"ExecStart={MGMT_DIR}/venv/bin/uvicorn {PACKAGE_NAME}.server:app "
            f"--host 0.0.0.0 --port {cfg.management_port}\n"
            "Restart=always\n"
            "RestartSec=5\n"
            "\n"
            "[Install]\n"
            "WantedBy=multi-user.target\n"
        )

    def _management_api(self) -> str:
        archive = shlex.quote(_b64(remote_package_archive()))
        return (
            f"# Management API on port {self.config.management_port}\n"
            f"rm -rf {MGMT_DIR}/{PACKAGE_NAME}\n"
            f"echo {archive} | base64 -d | tar -xz -C {MGMT_DIR}\n"
            f"[ -x {MGMT_DIR}/venv/bin/python ] || python3 -m venv {MGMT_DIR}/venv\n"
            f"{MGMT_DIR}/venv/bin/pip install --quiet {' '.join(REMOTE_REQUIREMENTS)}\n"
            + _heredoc(f"/etc/systemd/system/{MGMT_SERVICE}", self.management_unit(), "UNIT")
            + "systemctl daemon-reload\n"
            f"systemctl enable --now {MGMT_SERVICE}\n"
        )
