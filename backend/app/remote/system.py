"""Host-side operations of the management service: agents, units, credentials.

Runs as root. Agent services are systemd *user* units owned by the account
user, driven through ``runuser`` with that user's runtime dir.
"""

import logging
import os
import pwd
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path

from .agents import AGENTS, TERMINAL_SERVICE, AgentKind, AgentSpec, render_user_unit
from .config import RemoteSettings
from .credentials import update_env_file

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """A host command exited non-zero or timed out."""


class SystemManager:
    def __init__(self, settings: RemoteSettings):
        self.settings = settings

    # ── shell helpers ─────────────────────────────────────────────

    def _run(self, command: str, timeout: int | None = None) -> str:
        logger.debug("Running: %s", command)
        try:
            proc = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout or self.settings.DEVBOX_COMMAND_TIMEOUT_SECONDS,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"Command timed out after {exc.timeout}s") from exc
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout).strip()[-500:]
            raise CommandError(f"Command failed with exit code {proc.returncode}: {detail}")
        return proc.stdout.strip()

    def _succeeds(self, command: str) -> bool:
        try:
            self._run(command, timeout=30)
        except CommandError:
            return False
        return True

    def _user_uid(self) -> int:
        return pwd.getpwnam(self.settings.DEVBOX_USER).pw_uid

    def systemctl_user(self, args: str) -> str:
        inner = f"XDG_RUNTIME_DIR=/run/user/{self._user_uid()} systemctl --user {args}"
        return f"runuser -l {shlex.quote(self.settings.DEVBOX_USER)} -c {shlex.quote(inner)}"

    # ── status ────────────────────────────────────────────────────

    def _as_user(self, command: str) -> str:
        return f"runuser -l {shlex.quote(self.settings.DEVBOX_USER)} -c {shlex.quote(command)}"

    def is_installed(self, kind: AgentKind) -> bool:
        spec = AGENTS[kind]
        check = spec.render_installed_check(self.settings.DEVBOX_USER, self.settings.DEVBOX_HOME)
        return self._succeeds(self._as_user(check))

    def is_running(self, kind: AgentKind) -> bool:
        try:
            out = self._run(self.systemctl_user(f"is-active {AGENTS[kind].service_name}"), timeout=30)
        except CommandError:
            return False
        return out == "active"

    def status(self) -> dict[str, dict[str, bool]]:
        return {
            kind.value: {"installed": self.is_installed(kind), "running": self.is_running(kind)}
            for kind in AgentKind
        }

    # ── install / uninstall ───────────────────────────────────────

    def _write_unit(self, spec: AgentSpec, port: int) -> None:
        home = self.settings.DEVBOX_HOME
        unit_dir = self.settings.unit_dir
        unit_dir.mkdir(parents=True, exist_ok=True)
        unit = render_user_unit(
            spec.label, spec.render_exec_start(port, home), self.settings.DEVBOX_ENV_FILE, home
        )
        (unit_dir / spec.service_name).write_text(unit)
        self._run(f"chown -R {shlex.quote(self.settings.DEVBOX_USER)}: {shlex.quote(str(Path(home) / '.config'))}")

    def install(self, kind: AgentKind) -> None:
        spec = AGENTS[kind]
        port = self.settings.load_ports()[kind.value]
        if self.is_installed(kind):
            logger.info("%s already installed; refreshing its service", kind.value)
        else:
            logger.info("Installing %s", kind.value)
            self._run(spec.render_install(self.settings.DEVBOX_USER, self.settings.DEVBOX_HOME))
        self._write_unit(spec, port)
        self._run(self.systemctl_user("daemon-reload"))
        self._run(self.systemctl_user(f"enable --now {spec.service_name}"))
        logger.info("%s service enabled on port %d", kind.value, port)

    def uninstall(self, kind: AgentKind) -> None:
        service = AGENTS[kind].service_name
        logger.info("Stopping and disabling %s", service)
        # A unit that is already stopped still has to be disabled.
        self._succeeds(self.systemctl_user(f"stop {service}"))
        self._run(self.systemctl_user(f"disable {service}"))

    # ── credentials ───────────────────────────────────────────────

    def dependent_services(self) -> list[str]:
        return [TERMINAL_SERVICE] + [spec.service_name for spec in AGENTS.values()]

    def write_env_file(self, content: str) -> None:
        """Replace the env file atomically, owned by the dev user with mode 0600."""
        env_file = Path(self.settings.DEVBOX_ENV_FILE)
        fd, tmp_name = tempfile.mkstemp(dir=env_file.parent, prefix=".env.")
        try:
            with os.fdopen(fd, "w") as tmp:
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.chmod(tmp_name, 0o600)
            self._chown(tmp_name)
            os.replace(tmp_name, env_file)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _chown(self, path: str) -> None:
        shutil.chown(path, user=self.settings.DEVBOX_USER, group=self.settings.DEVBOX_USER)

    def reset_credentials(self, username: str, password: str) -> None:
        env_file = Path(self.settings.DEVBOX_ENV_FILE)
        current = env_file.read_text() if env_file.exists() else ""
        self.write_env_file(update_env_file(current, username, password))

        self._run(self.systemctl_user("daemon-reload"))
        for service in self.dependent_services():
            # try-restart leaves stopped (uninstalled) units stopped.
            if not self._succeeds(self.systemctl_user(f"try-restart {service}")):
                logger.debug("Skipped restart of %s", service)

    def restart_management_service(self) -> None:
        logger.info("Restarting %s to apply new credentials", self.settings.DEVBOX_MGMT_SERVICE)
        try:
            self._run(f"systemctl restart {shlex.quote(self.settings.DEVBOX_MGMT_SERVICE)}")
        except CommandError as exc:
            logger.error("Self-restart failed: %s", exc)
