"""The closed set of agent kinds and everything needed to run each one.

Both the setup script generator and the on-machine management service render
service units from this table, so a unit written at first boot and one written
by a later ``/install`` call are identical.
"""

from dataclasses import dataclass
from enum import Enum


class AgentKind(str, Enum):
    OPENCODE = "opencode"
    CLAUDE_CODE = "claude-code"
    CODEX = "codex"


class AgentFlavor(str, Enum):
    WEB = "web"  # serves its own web UI
    TERMINAL = "terminal"  # CLI exposed through a ttyd web terminal


# systemd expands ${TTYD_CREDENTIAL} from the EnvironmentFile as one word, so
# the password never appears in a unit file.
TTYD_BINARY = "/usr/local/bin/ttyd"
TTYD_CREDENTIAL_VAR = "TTYD_CREDENTIAL"


@dataclass(frozen=True)
class AgentSpec:
    kind: AgentKind
    label: str
    flavor: AgentFlavor
    default_port: int
    service_name: str
    install_command: str
    installed_check: str
    exec_start: str

    def render_install(self, user: str, home: str) -> str:
        return self.install_command.format(user=user, home=home)

    def render_installed_check(self, user: str, home: str) -> str:
        return self.installed_check.format(user=user, home=home)

    def render_exec_start(self, port: int, home: str) -> str:
        return self.exec_start.format(
            port=port, home=home, ttyd=TTYD_BINARY, credential=f"${{{TTYD_CREDENTIAL_VAR}}}"
        )


AGENTS: dict[AgentKind, AgentSpec] = {
    AgentKind.OPENCODE: AgentSpec(
        kind=AgentKind.OPENCODE,
        label="OpenCode Server",
        flavor=AgentFlavor.WEB,
        default_port=4096,
        service_name="opencode.service",
        install_command='runuser -l {user} -c "curl -fsSL https://opencode.ai/install | bash"',
        installed_check="test -x {home}/.opencode/bin/opencode",
        exec_start="{home}/.opencode/bin/opencode web --hostname 0.0.0.0 --port {port}",
    ),
    AgentKind.CLAUDE_CODE: AgentSpec(
        kind=AgentKind.CLAUDE_CODE,
        label="Claude Code via ttyd",
        flavor=AgentFlavor.TERMINAL,
        default_port=4097,
        service_name="claude-code.service",
        install_command="command -v claude >/dev/null 2>&1 || npm install -g @anthropic-ai/claude-code",
        installed_check="command -v claude",
        exec_start="{ttyd} -W -p {port} -c {credential} claude",
    ),
    AgentKind.CODEX: AgentSpec(
        kind=AgentKind.CODEX,
        label="Codex CLI via ttyd",
        flavor=AgentFlavor.TERMINAL,
        default_port=4100,
        service_name="codex.service",
        install_command="command -v codex >/dev/null 2>&1 || npm install -g @openai/codex",
        installed_check="command -v codex",
        exec_start="{ttyd} -W -p {port} -c {credential} codex",
    ),
}

TERMINAL_SERVICE = "terminal.service"
DEFAULT_TERMINAL_PORT = 4099
DEFAULT_MANAGEMENT_PORT = 4098


def agent_names() -> list[str]:
    return [kind.value for kind in AgentKind]


def parse_agent(value: str) -> AgentKind:
    """Map a wire name to an AgentKind. Raises ValueError for unknown names."""
    try:
        return AgentKind(value)
    except ValueError:
        choices = ", ".join(f"'{name}'" for name in agent_names())
        raise ValueError(f"agent must be one of {choices}") from None


def default_ports() -> dict[str, int]:
    return {kind.value: spec.default_port for kind, spec in AGENTS.items()}


def terminal_exec_start(port: int) -> str:
    return f"{TTYD_BINARY} -W -p {port} -c ${{{TTYD_CREDENTIAL_VAR}}} bash"


def render_user_unit(description: str, exec_start: str, env_file: str, home: str) -> str:
    """A restart-always systemd user unit bound to the mesh client's startup."""
    return (
        "[Unit]\n"
        f"Description={description}\n"
        "After=network.target tailscaled.service\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"EnvironmentFile={env_file}\n"
        f"ExecStart={exec_start}\n"
        f"WorkingDirectory={home}\n"
        "Restart=always\n"
        "RestartSec=5\n"
        "\n"
        "[Install]\n"
        "WantedBy=default.target\n"
    )
