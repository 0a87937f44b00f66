"""Tests for the management service that runs on each provisioned machine."""

import json
import threading

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.remote import server as remote_server
from app.remote.agents import AgentKind
from app.remote.config import RemoteSettings
from app.remote.credentials import (
    PASSWORD_KEY,
    USERNAME_KEY,
    parse_env_file,
    quote_env_value,
    render_env_file,
    update_env_file,
    validate_password,
    validate_username,
)
from app.remote.system import CommandError, SystemManager

TOKEN = "Abcdefghijklmnopqrstuvwx"


class FakeSystem:
    def __init__(self):
        self.installed: set[str] = {"opencode"}
        self.calls: list[tuple] = []
        self.fail_with: str | None = None
        self.restarted = threading.Event()

    def status(self):
        return {
            kind.value: {"installed": kind.value in self.installed, "running": kind.value in self.installed}
            for kind in AgentKind
        }

    def install(self, kind):
        self.calls.append(("install", kind.value))
        if self.fail_with:
            raise CommandError(self.fail_with)
        self.installed.add(kind.value)

    def uninstall(self, kind):
        self.calls.append(("uninstall", kind.value))
        if self.fail_with:
            raise CommandError(self.fail_with)
        self.installed.discard(kind.value)

    def reset_credentials(self, username, password):
        self.calls.append(("reset", username, password))
        if self.fail_with:
            raise CommandError(self.fail_with)

    def restart_management_service(self):
        self.restarted.set()


@pytest.fixture()
def fake_system() -> FakeSystem:
    return FakeSystem()


@pytest.fixture()
def restarts(monkeypatch) -> list:
    scheduled = []
    monkeypatch.setattr(
        remote_server, "schedule_self_restart", lambda system, delay: scheduled.append(delay)
    )
    return scheduled


@pytest_asyncio.fixture()
async def rmp(fake_system):
    settings = RemoteSettings(OPENCODE_SERVER_PASSWORD=TOKEN, DEVBOX_RESTART_DELAY_SECONDS=0.5)
    app = remote_server.create_app(settings=settings, system=fake_system)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://mgmt",
        headers={"Authorization": f"Bearer {TOKEN}"},
    ) as ac:
        yield ac


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, rmp: AsyncClient):
        resp = await rmp.get("/status", headers={"Authorization": ""})
        assert resp.status_code == 401
        assert resp.json() == {"error": "unauthorized"}

    @pytest.mark.asyncio
    async def test_wrong_token(self, rmp: AsyncClient):
        resp = await rmp.get("/status", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_auth_checked_before_routing(self, rmp: AsyncClient):
        resp = await rmp.get("/does-not-exist", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_empty_configured_token_rejects_everything(self, fake_system):
        app = remote_server.create_app(
            settings=RemoteSettings(OPENCODE_SERVER_PASSWORD=""), system=fake_system
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://mgmt") as ac:
            resp = await ac.get("/status", headers={"Authorization": "Bearer "})
        assert resp.status_code == 401


class TestStatus:
    @pytest.mark.asyncio
    async def test_reports_every_agent_kind(self, rmp: AsyncClient):
        resp = await rmp.get("/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert set(body["agents"]) == {"opencode", "claude-code", "codex"}
        assert body["agents"]["opencode"] == {"installed": True, "running": True}
        assert body["agents"]["codex"] == {"installed": False, "running": False}


class TestInstall:
    @pytest.mark.asyncio
    async def test_install(self, rmp: AsyncClient, fake_system):
        resp = await rmp.post("/install", json={"agent": "codex"})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "agent": "codex"}
        assert fake_system.calls == [("install", "codex")]

    @pytest.mark.asyncio
    async def test_unknown_agent(self, rmp: AsyncClient, fake_system):
        resp = await rmp.post("/install", json={"agent": "vim"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "agent must be one of 'opencode', 'claude-code', 'codex'"}
        assert fake_system.calls == []

    @pytest.mark.asyncio
    async def test_missing_agent(self, rmp: AsyncClient):
        resp = await rmp.post("/install", json={})
        assert resp.status_code == 400
        assert resp.json() == {"error": "agent is required"}

    @pytest.mark.asyncio
    async def test_malformed_json(self, rmp: AsyncClient):
        resp = await rmp.post(
            "/install", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_install_failure(self, rmp: AsyncClient, fake_system):
        fake_system.fail_with = "Command failed with exit code 1: npm ERR!"
        resp = await rmp.post("/install", json={"agent": "codex"})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Command failed with exit code 1: npm ERR!"}

    @pytest.mark.asyncio
    async def test_uninstall(self, rmp: AsyncClient, fake_system):
        resp = await rmp.post("/uninstall", json={"agent": "opencode"})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "agent": "opencode"}
        assert "opencode" not in fake_system.installed

    @pytest.mark.asyncio
    async def test_uninstall_failure(self, rmp: AsyncClient, fake_system):
        fake_system.fail_with = "disable failed"
        resp = await rmp.post("/uninstall", json={"agent": "opencode"})
        assert resp.status_code == 500


class TestResetCredentials:
    @pytest.mark.asyncio
    async def test_reset_schedules_restart(self, rmp: AsyncClient, fake_system, restarts):
        resp = await rmp.post(
            "/reset-credentials", json={"username": "alice_1", "password": "new-pass-123"}
        )
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert fake_system.calls == [("reset", "alice_1", "new-pass-123")]
        assert restarts == [0.5]

    @pytest.mark.asyncio
    async def test_newline_in_password_rejected(self, rmp: AsyncClient, fake_system, restarts):
        resp = await rmp.post(
            "/reset-credentials", json={"username": "alice", "password": "newpass\nX=1"}
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "Password contains invalid characters"}
        assert fake_system.calls == []
        assert restarts == []

    @pytest.mark.asyncio
    async def test_bad_username_rejected(self, rmp: AsyncClient, fake_system):
        resp = await rmp.post(
            "/reset-credentials", json={"username": "alice smith", "password": "newpass123"}
        )
        assert resp.status_code == 400
        assert fake_system.calls == []

    @pytest.mark.asyncio
    async def test_short_password_rejected(self, rmp: AsyncClient):
        resp = await rmp.post("/reset-credentials", json={"username": "alice", "password": "short"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Password must be 8-256 characters"}

    @pytest.mark.asyncio
    async def test_host_failure(self, rmp: AsyncClient, fake_system, restarts):
        fake_system.fail_with = "daemon-reload failed"
        resp = await rmp.post(
            "/reset-credentials", json={"username": "alice", "password": "newpass123"}
        )
        assert resp.status_code == 500
        assert resp.json() == {"error": "Credential reset failed"}
        assert restarts == []

    def test_self_restart_runs_off_the_request_thread(self, fake_system):
        remote_server.schedule_self_restart(fake_system, 0.01)
        assert fake_system.restarted.wait(timeout=2)


class TestRouting:
    @pytest.mark.asyncio
    async def test_unknown_route(self, rmp: AsyncClient):
        resp = await rmp.get("/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "not found"}

    @pytest.mark.asyncio
    async def test_wrong_method_is_not_found(self, rmp: AsyncClient):
        resp = await rmp.get("/install")
        assert resp.status_code == 404


class TestCredentials:
    def test_username_rules(self):
        assert validate_username("dev_box-1") == "dev_box-1"
        with pytest.raises(ValueError, match="Username is required"):
            validate_username("")
        with pytest.raises(ValueError):
            validate_username("a" * 65)
        with pytest.raises(ValueError):
            validate_username("bad;name")

    def test_password_rules(self):
        assert validate_password("x" * 8) == "x" * 8
        assert validate_password("x" * 256) == "x" * 256
        with pytest.raises(ValueError):
            validate_password("x" * 7)
        with pytest.raises(ValueError):
            validate_password("x" * 257)
        with pytest.raises(ValueError, match="invalid characters"):
            validate_password("tab\there")
        with pytest.raises(ValueError, match="invalid characters"):
            validate_password("del\x7fhere")

    def test_update_env_file_keeps_unrelated_lines(self):
        original = "# managed\nOTHER=1\n" + render_env_file("devbox", "old-password")
        updated = parse_env_file(update_env_file(original, "alice", "new-password"))
        assert updated["OTHER"] == "1"
        assert updated[USERNAME_KEY] == "alice"
        assert updated[PASSWORD_KEY] == "new-password"

    @pytest.mark.parametrize(
        "password",
        ['pa\\ss"word ', " $HOME `id` ", "ends-with-backslash\\", "plain-password"],
    )
    def test_env_values_survive_quoting(self, password):
        parsed = parse_env_file(render_env_file("alice", password))
        assert parsed[PASSWORD_KEY] == password
        assert parsed["TTYD_CREDENTIAL"] == f"alice:{password}"

    def test_env_values_are_double_quoted(self):
        assert quote_env_value('pa\\ss"word ') == '"pa\\\\ss\\"word "'
        assert quote_env_value("$HOME") == '"\\$HOME"'
        lines = render_env_file("alice", "secret-pass").splitlines()
        assert lines == [
            'OPENCODE_SERVER_USERNAME="alice"',
            'OPENCODE_SERVER_PASSWORD="secret-pass"',
            'TTYD_CREDENTIAL="alice:secret-pass"',
        ]


class RecordingSystem(SystemManager):
    """SystemManager with the shell replaced by a command log."""

    def __init__(self, settings, failing=()):
        super().__init__(settings)
        self.commands: list[str] = []
        self.failing = failing

    def _run(self, command, timeout=None):
        self.commands.append(command)
        if any(marker in command for marker in self.failing):
            raise CommandError("boom")
        return "active"

    def _user_uid(self):
        return 1000

    def _chown(self, path):
        pass


@pytest.fixture()
def remote_settings(tmp_path) -> RemoteSettings:
    return RemoteSettings(
        OPENCODE_SERVER_PASSWORD=TOKEN,
        DEVBOX_HOME=str(tmp_path),
        DEVBOX_ENV_FILE=str(tmp_path / ".env"),
        DEVBOX_PORTS_FILE=str(tmp_path / "ports.json"),
    )


class TestSystemManager:
    def test_install_writes_unit_and_enables_it(self, remote_settings, tmp_path):
        system = RecordingSystem(remote_settings, failing=("-c 'command -v codex'",))
        system.install(AgentKind.CODEX)

        unit = (tmp_path / ".config" / "systemd" / "user" / "codex.service").read_text()
        assert "-p 4100 -c ${TTYD_CREDENTIAL} codex" in unit
        assert f"EnvironmentFile={tmp_path / '.env'}" in unit
        assert any("npm install -g @openai/codex" in c for c in system.commands)
        assert any("enable --now codex.service" in c for c in system.commands)

    def test_install_uses_assigned_port(self, remote_settings, tmp_path):
        (tmp_path / "ports.json").write_text(json.dumps({"codex": 5100, "terminal": 4099}))
        system = RecordingSystem(remote_settings)
        system.install(AgentKind.CODEX)
        unit = (tmp_path / ".config" / "systemd" / "user" / "codex.service").read_text()
        assert "-p 5100 " in unit

    def test_install_skips_download_when_present(self, remote_settings):
        system = RecordingSystem(remote_settings)
        system.install(AgentKind.OPENCODE)
        assert not any("opencode.ai/install" in c for c in system.commands)

    def test_uninstall_disables_even_if_already_stopped(self, remote_settings):
        system = RecordingSystem(remote_settings, failing=("stop opencode.service",))
        system.uninstall(AgentKind.OPENCODE)
        assert any("disable opencode.service" in c for c in system.commands)

    def test_status_reads_every_agent(self, remote_settings):
        system = RecordingSystem(remote_settings, failing=("-c 'command -v claude'",))
        status = system.status()
        assert status["claude-code"]["installed"] is False
        assert status["opencode"] == {"installed": True, "running": True}

    def test_ports_file_falls_back_to_defaults(self, remote_settings, tmp_path):
        (tmp_path / "ports.json").write_text("not json")
        ports = remote_settings.load_ports()
        assert ports == {"opencode": 4096, "claude-code": 4097, "codex": 4100, "terminal": 4099}

    def test_reset_credentials_rewrites_env_file(self, remote_settings, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("# managed\nOTHER=1\n" + render_env_file("devbox", "old-password"))
        system = RecordingSystem(remote_settings)

        system.reset_credentials("alice", 'new "pass\\word"')

        parsed = parse_env_file(env_file.read_text())
        assert parsed["OTHER"] == "1"
        assert parsed[USERNAME_KEY] == "alice"
        assert parsed[PASSWORD_KEY] == 'new "pass\\word"'
        assert env_file.stat().st_mode & 0o777 == 0o600
        assert [p.name for p in tmp_path.iterdir() if p.name.startswith(".env.")] == []

    def test_reset_credentials_only_restarts_running_units(self, remote_settings):
        system = RecordingSystem(remote_settings)
        system.reset_credentials("alice", "new-password")

        restarts = [c for c in system.commands if "restart" in c]
        assert any("try-restart opencode.service" in c for c in restarts)
        assert any("try-restart codex.service" in c for c in restarts)
        assert all("try-restart" in c for c in restarts)
        assert any("daemon-reload" in c for c in system.commands)

    def test_failed_env_write_leaves_old_file(self, remote_settings, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text(render_env_file("devbox", "old-password"))
        system = RecordingSystem(remote_settings)

        def refuse(path):
            raise PermissionError("chown refused")

        monkeypatch.setattr(system, "_chown", refuse)
        with pytest.raises(PermissionError):
            system.reset_credentials("alice", "new-password")

        assert parse_env_file(env_file.read_text())[PASSWORD_KEY] == "old-password"
        assert sorted(p.name for p in tmp_path.iterdir()) == [".env"]
        assert system.commands == []
